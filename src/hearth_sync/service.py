"""Operation surface for the desktop shell.

Every method returns a plain dict and reports expected failures as
``{"success": False, "error": ...}`` so the caller can render them directly.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

import httpx

from .config import Settings, get_settings
from .errors import HearthSyncError, SourceUnavailable
from .extraction import DEFAULT_LIMIT, check_access, list_handles
from .logging import get_logger
from .models import SyncCursor
from .session import SessionManager
from .sync import BundleLike, SyncOrchestrator

logger = get_logger("hearth_sync.service")


def _failure(exc: BaseException) -> Dict[str, Any]:
    return {"success": False, "error": str(exc)}


class SyncService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        sessions: Optional[SessionManager] = None,
        orchestrator: Optional[SyncOrchestrator] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sessions = sessions or SessionManager(self.settings)
        self.orchestrator = orchestrator or SyncOrchestrator(self.settings, self.sessions)

    async def start(self) -> bool:
        return await self.sessions.startup()

    async def aclose(self) -> None:
        await self.orchestrator.wait_for_background()
        await self.sessions.aclose()

    async def check_access(self) -> Dict[str, Any]:
        try:
            await asyncio.to_thread(check_access, self.settings.chat_db)
        except SourceUnavailable as exc:
            logger.info("disk_access_unavailable", path=str(exc.path), reason=exc.reason)
            return {"hasAccess": False, "error": exc.reason}
        return {"hasAccess": True}

    async def get_recent_messages(
        self,
        since_date: Optional[datetime] = None,
        since_message_id: Optional[int] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> Dict[str, Any]:
        cursor = SyncCursor(since_message_id=since_message_id, since_date=since_date)
        try:
            result = await self.orchestrator.extract(cursor, limit)
        except HearthSyncError as exc:
            logger.error("recent_messages_failed", error=str(exc))
            return _failure(exc)
        return {
            "success": True,
            "contacts": [bundle.to_payload() for bundle in result.contacts],
            "total_messages": result.total_messages,
        }

    async def get_contacts(self) -> Dict[str, Any]:
        try:
            handles = await asyncio.to_thread(list_handles, self.settings.chat_db)
        except HearthSyncError as exc:
            logger.error("contacts_list_failed", error=str(exc))
            return _failure(exc)
        return {"success": True, "contacts": [handle.model_dump(mode="json") for handle in handles]}

    async def get_last_sync(self) -> Dict[str, Any]:
        try:
            last_id = await self.orchestrator.get_last_sync()
        except HearthSyncError as exc:
            logger.error("last_sync_failed", error=str(exc))
            return _failure(exc)
        return {"success": True, "lastMessageId": last_id}

    async def sync_messages(self, messages: Sequence[BundleLike]) -> Dict[str, Any]:
        try:
            return await self.orchestrator.sync_messages(messages)
        except HearthSyncError as exc:
            logger.error("sync_failed", error=str(exc))
            return _failure(exc)

    async def backfill_contact_info(self) -> Dict[str, Any]:
        try:
            return await self.orchestrator.backfill_contact_info()
        except HearthSyncError as exc:
            logger.error("contact_backfill_failed", error=str(exc))
            return _failure(exc)

    async def upload_handle_images(self) -> Dict[str, Any]:
        try:
            handles = await asyncio.to_thread(list_handles, self.settings.chat_db)
            uploaded = await self.orchestrator.upload_images(h.identifier for h in handles)
        except (HearthSyncError, httpx.HTTPError) as exc:
            logger.error("handle_images_failed", error=str(exc))
            return _failure(exc)
        return {"success": True, "uploaded": uploaded}

    async def get_contact_images(self, handle_ids: Iterable[str]) -> Dict[str, Any]:
        contacts = await self.orchestrator.load_contacts(include_images=True)
        images: Dict[str, str] = {}
        for handle in handle_ids:
            image = contacts.image_for(handle)
            if image is not None:
                images[handle] = image.to_data_uri()
        return {"success": True, "images": images}

    async def get_auth(self) -> Dict[str, Any]:
        return self.sessions.auth_state()

    async def sign_out(self) -> Dict[str, Any]:
        self.sessions.sign_out()
        return {"success": True}


__all__ = ["SyncService"]
