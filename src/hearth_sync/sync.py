from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

import backoff
import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import InvalidPayload, SyncRequestFailed
from .extraction import DEFAULT_LIMIT, extract_since, list_handles
from .identity import ContactIndex
from .logging import get_logger
from .models import ConversationBundle, ExtractionResult, SyncCursor
from .session import SessionManager

logger = get_logger("hearth_sync.sync")

SYNC_PATH = "/rolodex/imessage-sync"
HANDLE_IMAGES_PATH = "/rolodex/imessage-handle-images"

BundleLike = Union[ConversationBundle, Mapping[str, Any]]
ContactLoader = Callable[..., ContactIndex]


@dataclass(slots=True)
class SyncReport:
    success: bool
    total_messages: int = 0
    handles: List[str] = field(default_factory=list)
    cursor_before: Optional[int] = None
    last_message_id: Optional[int] = None
    server: Dict[str, Any] = field(default_factory=dict)


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return fallback


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        logger.warning("sync_bad_json", body=response.text[:256])
        return {}
    return body if isinstance(body, dict) else {"result": body}


def _as_bundles(messages: Sequence[BundleLike]) -> List[ConversationBundle]:
    try:
        return [
            item if isinstance(item, ConversationBundle) else ConversationBundle.model_validate(item)
            for item in messages
        ]
    except ValidationError as exc:
        raise InvalidPayload(f"Invalid message bundle: {exc}") from exc


class SyncOrchestrator:
    """Runs sync cycles against the application API.

    A cycle fetches the server cursor, extracts newer messages, pushes them and
    then uploads contact avatars for the touched handles in a background task
    whose failures are only logged. Cycles are serialized so two callers
    cannot read the same cursor and push overlapping batches.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        contact_loader: ContactLoader = ContactIndex.load,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._contact_loader = contact_loader
        self._cycle_lock = asyncio.Lock()
        self._background: Set[asyncio.Task[int]] = set()

    @backoff.on_exception(backoff.expo, httpx.TransportError, max_tries=3)
    async def _get_cursor_response(self) -> httpx.Response:
        return await self._sessions.authenticated_request("GET", SYNC_PATH)

    async def get_last_sync(self) -> Optional[int]:
        """Return the highest message id the server has stored, if any."""

        try:
            response = await self._get_cursor_response()
        except httpx.HTTPError as exc:
            raise SyncRequestFailed(f"Failed to get last sync: {exc}") from exc

        if not response.is_success:
            raise SyncRequestFailed(
                _error_message(response, f"Failed to get last sync: {response.status_code}"),
                status_code=response.status_code,
            )

        last_id = _json_or_empty(response).get("lastMessageId")
        return int(last_id) if last_id is not None else None

    async def push_messages(self, messages: Sequence[BundleLike]) -> Dict[str, Any]:
        bundles = _as_bundles(messages)
        payload = {"messages": [bundle.to_payload() for bundle in bundles]}
        try:
            response = await self._sessions.authenticated_request("POST", SYNC_PATH, json=payload)
        except httpx.HTTPError as exc:
            raise SyncRequestFailed(f"Sync failed: {exc}") from exc

        if not response.is_success:
            raise SyncRequestFailed(
                _error_message(response, f"Sync failed: {response.status_code}"),
                status_code=response.status_code,
            )

        logger.info("sync_pushed", handles=len(bundles))
        return _json_or_empty(response)

    async def load_contacts(self, *, include_images: bool = False) -> ContactIndex:
        return await asyncio.to_thread(
            self._contact_loader, self._settings, include_images=include_images
        )

    async def upload_images(self, handles: Iterable[str]) -> int:
        """Upload avatars for ``handles`` that resolve to a contact image.

        Returns the number of images the server accepted.
        """

        handles = list(dict.fromkeys(handles))
        if not handles:
            return 0

        contacts = await self.load_contacts(include_images=True)
        images: Dict[str, str] = {}
        for handle in handles:
            image = contacts.image_for(handle)
            if image is not None:
                images[handle] = image.to_data_uri()

        if not images:
            logger.debug("handle_images_none_resolved", handles=len(handles))
            return 0

        response = await self._sessions.authenticated_request(
            "POST", HANDLE_IMAGES_PATH, json={"images": images}
        )
        response.raise_for_status()
        uploaded = int(_json_or_empty(response).get("uploaded", 0))
        logger.info("handle_images_uploaded", resolved=len(images), uploaded=uploaded)
        return uploaded

    async def _backfill_images(self, handles: List[str]) -> int:
        try:
            return await self.upload_images(handles)
        except Exception:
            logger.warning("handle_image_backfill_failed", handles=len(handles), exc_info=True)
            return 0

    def schedule_image_backfill(self, handles: Iterable[str]) -> asyncio.Task[int]:
        """Start a background avatar upload that cannot fail the caller."""

        task = asyncio.ensure_future(self._backfill_images(list(handles)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def sync_messages(self, messages: Sequence[BundleLike]) -> Dict[str, Any]:
        """Push bundles, then backfill avatars for their handles in the background."""

        bundles = _as_bundles(messages)
        try:
            return await self.push_messages(bundles)
        finally:
            self.schedule_image_backfill(bundle.handle_id for bundle in bundles)

    async def backfill_contact_info(self) -> Dict[str, Any]:
        """Send resolved contact names for every handle known to chat.db."""

        summaries = await asyncio.to_thread(list_handles, self._settings.chat_db)
        contacts = await self.load_contacts()
        matched = [
            {"handle_id": summary.identifier, "contact_name": name}
            for summary in summaries
            if (name := contacts.name_for(summary.identifier))
        ]
        if not matched:
            logger.info("contact_backfill_nothing_matched", handles=len(summaries))
            return {"success": True, "updated": 0}

        try:
            response = await self._sessions.authenticated_request(
                "PATCH", SYNC_PATH, json={"contacts": matched}
            )
        except httpx.HTTPError as exc:
            raise SyncRequestFailed(f"Contact backfill failed: {exc}") from exc

        if not response.is_success:
            raise SyncRequestFailed(
                _error_message(response, f"Contact backfill failed: {response.status_code}"),
                status_code=response.status_code,
            )

        logger.info("contact_backfill_sent", matched=len(matched), handles=len(summaries))
        return _json_or_empty(response)

    async def extract(self, cursor: SyncCursor, limit: int = DEFAULT_LIMIT) -> ExtractionResult:
        contacts = await self.load_contacts()
        return await asyncio.to_thread(
            extract_since, self._settings.chat_db, cursor, limit, contacts
        )

    async def run_cycle(
        self, limit: Optional[int] = None, since_date: Optional[datetime] = None
    ) -> SyncReport:
        """Run one cursor → extract → push cycle.

        ``since_date`` only applies when the server has no cursor yet.
        """

        limit = limit or self._settings.batch_size
        async with self._cycle_lock:
            last_id = await self.get_last_sync()
            cursor = SyncCursor(
                since_message_id=last_id,
                since_date=since_date if last_id is None else None,
            )
            result = await self.extract(cursor, limit)
            if result.total_messages == 0:
                logger.info("sync_nothing_new", cursor=last_id)
                return SyncReport(success=True, cursor_before=last_id, last_message_id=last_id)

            server = await self.sync_messages(result.contacts)
            logger.info(
                "sync_cycle_complete",
                total_messages=result.total_messages,
                handles=len(result.contacts),
                last_message_id=result.max_message_id,
            )
            return SyncReport(
                success=True,
                total_messages=result.total_messages,
                handles=result.handles,
                cursor_before=last_id,
                last_message_id=result.max_message_id,
                server=server,
            )

    async def drain(
        self, limit: Optional[int] = None, since_date: Optional[datetime] = None, max_cycles: int = 100
    ) -> List[SyncReport]:
        """Repeat cycles until a batch comes back smaller than ``limit``."""

        limit = limit or self._settings.batch_size
        reports: List[SyncReport] = []
        for _ in range(max_cycles):
            report = await self.run_cycle(limit, since_date)
            stalled = bool(reports) and report.cursor_before == reports[-1].cursor_before
            reports.append(report)
            if stalled:
                # the server did not advance its cursor after the last push
                logger.warning("sync_cursor_stalled", cursor=report.cursor_before)
                break
            if report.total_messages < limit:
                break
        return reports


__all__ = ["SyncOrchestrator", "SyncReport", "SYNC_PATH", "HANDLE_IMAGES_PATH"]
