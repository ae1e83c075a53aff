from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import orjson

from .config import Settings
from .errors import NotAuthenticated, SessionExpired
from .logging import get_logger
from .models import AuthSession

logger = get_logger("hearth_sync.session")


class SessionStore:
    """JSON persistence for the signed-in session.

    The file is rewritten in full on every mutation and removed on sign-out.
    It is only read at startup; the in-memory session is authoritative after.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> AuthSession:
        if not self.path.exists():
            return AuthSession()
        try:
            session = AuthSession.model_validate(orjson.loads(self.path.read_bytes()))
        except Exception:
            logger.warning("session_load_failed", path=str(self.path), exc_info=True)
            return AuthSession()
        logger.info("session_loaded", email=session.email)
        return session

    def save(self, session: AuthSession) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(orjson.dumps(session.to_storage(), option=orjson.OPT_INDENT_2))
        except OSError:
            logger.error("session_save_failed", path=str(self.path), exc_info=True)

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            logger.error("session_clear_failed", path=str(self.path), exc_info=True)


class SessionManager:
    """Owns the live ``AuthSession`` and every request made with it.

    Refresh tokens rotate server-side and are single-use, so at most one
    refresh runs at a time: concurrent callers await the same task. A refresh
    that finishes after the session was cleared or replaced is discarded.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[SessionStore] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._store = store or SessionStore(settings.session_file)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout))
        self._session = AuthSession()
        self._generation = 0
        self._refresh_task: Optional[asyncio.Task[bool]] = None

    @property
    def session(self) -> AuthSession:
        return self._session

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _identity_url(self, path: str) -> str:
        return f"{self._settings.identity_url.rstrip('/')}{path}"

    def _api_url(self, path: str) -> str:
        return f"{self._settings.api_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self._settings.api_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _replace(self, session: AuthSession) -> None:
        self._generation += 1
        self._session = session
        self._store.save(session)

    def _clear(self) -> None:
        self._generation += 1
        self._session = AuthSession()
        self._store.clear()

    async def startup(self) -> bool:
        """Load the persisted session and make sure it is still usable.

        A session that can be neither validated nor refreshed is cleared.
        """

        self._session = self._store.load()
        if not self._session.access_token:
            return False

        if await self.validate():
            logger.info("session_valid", email=self._session.email)
            return True

        logger.info("session_unrecoverable_clearing", email=self._session.email)
        self._clear()
        return False

    async def _fetch_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        response = await self._client.get(
            self._identity_url("/auth/v1/user"),
            headers=self._headers(access_token),
        )
        if response.is_success:
            return response.json()
        return None

    async def validate(self) -> bool:
        """Probe the identity provider with the current access token.

        Any non-2xx answer or transport error falls through to ``refresh()``.
        """

        access_token = self._session.access_token
        if not access_token:
            return False

        try:
            response = await self._client.get(
                self._identity_url("/auth/v1/user"),
                headers=self._headers(access_token),
            )
        except httpx.HTTPError:
            logger.warning("session_validate_error", exc_info=True)
            return await self.refresh()

        if response.is_success:
            return True

        logger.info("session_token_expired", status=response.status_code)
        return await self.refresh()

    async def refresh(self) -> bool:
        """Rotate the tokens, sharing one in-flight attempt between callers."""

        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._perform_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self) -> bool:
        try:
            generation = self._generation
            refresh_token = self._session.refresh_token
            if not refresh_token:
                logger.info("session_no_refresh_token")
                return False

            logger.info("session_refresh_start")
            try:
                response = await self._client.post(
                    self._identity_url("/auth/v1/token"),
                    params={"grant_type": "refresh_token"},
                    content=orjson.dumps({"refresh_token": refresh_token}),
                    headers={**self._headers(), "Content-Type": "application/json"},
                )
            except httpx.HTTPError:
                logger.warning("session_refresh_error", exc_info=True)
                return False

            if not response.is_success:
                logger.warning("session_refresh_rejected", status=response.status_code)
                return False

            try:
                data = response.json()
                refreshed = AuthSession(
                    access_token=data["access_token"],
                    refresh_token=data["refresh_token"],
                    user=data.get("user") or self._session.user,
                )
            except (ValueError, KeyError, TypeError):
                logger.warning("session_refresh_bad_payload", exc_info=True)
                return False

            if self._generation != generation:
                # signed out or replaced while the request was in flight
                logger.info("session_refresh_discarded")
                return False

            self._replace(refreshed)
            logger.info("session_refreshed", email=refreshed.email)
            return True
        finally:
            self._refresh_task = None

    async def sign_in_with_tokens(self, access_token: str, refresh_token: Optional[str]) -> bool:
        """Adopt tokens delivered by the sign-in callback once the user resolves."""

        try:
            user = await self._fetch_user(access_token)
        except httpx.HTTPError:
            logger.warning("sign_in_user_fetch_error", exc_info=True)
            return False

        if user is None:
            logger.warning("sign_in_rejected")
            return False

        self._replace(AuthSession(access_token=access_token, refresh_token=refresh_token, user=user))
        logger.info("signed_in", email=self._session.email)
        return True

    def sign_out(self) -> None:
        self._clear()
        logger.info("signed_out")

    def auth_state(self) -> Dict[str, Any]:
        if self._session.is_authenticated:
            user = self._session.user or {}
            return {
                "isAuthenticated": True,
                "user": {"email": user.get("email"), "id": user.get("id")},
                "token": self._session.access_token,
            }
        return {"isAuthenticated": False, "token": None}

    async def _send(self, method: str, path: str, json: Any, params: Optional[Dict[str, Any]]) -> httpx.Response:
        headers = self._headers(self._session.access_token)
        content = None
        if json is not None:
            content = orjson.dumps(json)
            headers["Content-Type"] = "application/json"
        return await self._client.request(
            method,
            self._api_url(path),
            content=content,
            params=params,
            headers=headers,
        )

    async def authenticated_request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request to the application API with the current access token.

        The session is validated first. A ``401`` answer triggers exactly one
        refresh and, if it succeeds, exactly one re-send; whatever the second
        attempt returns is handed back unchanged.
        """

        if not self._session.access_token:
            raise NotAuthenticated()

        if not await self.validate():
            if not self._session.refresh_token:
                self._clear()
            raise SessionExpired()

        response = await self._send(method, path, json, params)
        if response.status_code != httpx.codes.UNAUTHORIZED:
            return response

        logger.info("request_unauthorized_refreshing", method=method, path=path)
        if not await self.refresh():
            raise SessionExpired()
        return await self._send(method, path, json, params)


__all__ = ["SessionStore", "SessionManager"]
