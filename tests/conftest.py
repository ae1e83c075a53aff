import asyncio
import sqlite3
import sys
from pathlib import Path

import httpx
import orjson
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from hearth_sync.config import Settings  # noqa: E402

API_URL = "https://api.test/api"
IDENTITY_URL = "https://identity.test"

CHAT_SCHEMA = """
CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT, service TEXT);
CREATE TABLE message (
    ROWID INTEGER PRIMARY KEY,
    text TEXT,
    attributedBody BLOB,
    is_from_me INTEGER,
    date INTEGER,
    handle_id INTEGER
);
CREATE TABLE chat (ROWID INTEGER PRIMARY KEY, display_name TEXT);
CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER);
"""

ADDRESSBOOK_SCHEMA = """
CREATE TABLE ZABCDRECORD (
    Z_PK INTEGER PRIMARY KEY,
    ZFIRSTNAME TEXT,
    ZLASTNAME TEXT,
    ZTHUMBNAILIMAGEDATA BLOB
);
CREATE TABLE ZABCDPHONENUMBER (Z_PK INTEGER PRIMARY KEY, ZOWNER INTEGER, ZFULLNUMBER TEXT);
CREATE TABLE ZABCDEMAILADDRESS (Z_PK INTEGER PRIMARY KEY, ZOWNER INTEGER, ZADDRESS TEXT);
"""

# 2024-01-01T00:00:00Z in chat.db nanoseconds
JAN_1_2024 = (1704067200 - 978307200) * 1_000_000_000


def attributed_body(text: bytes, length: int | None = None) -> bytes:
    """Build a minimal typedstream blob with ``text`` at the NSString offset."""
    size = len(text) if length is None else length
    return (
        b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84\x12NSAttributedString\x00"
        b"\x84\x84\x08NSObject\x00\x85\x92\x84\x84\x84\x08"
        + b"NSString"
        + b"\x01\x94\x84\x01+"
        + bytes([size])
        + text
        + b"\x86\x84\x02iI\x01\x05\x92"
    )


@pytest.fixture
def make_chat_db(tmp_path):
    def _make(handles, messages, chats=()):
        path = tmp_path / "chat.db"
        with sqlite3.connect(path) as conn:
            conn.executescript(CHAT_SCHEMA)
            conn.executemany("INSERT INTO handle (ROWID, id, service) VALUES (?, ?, ?)", handles)
            conn.executemany(
                "INSERT INTO message (ROWID, text, attributedBody, is_from_me, date, handle_id)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                messages,
            )
            for chat_id, display_name, handle_ids in chats:
                conn.execute("INSERT INTO chat (ROWID, display_name) VALUES (?, ?)", (chat_id, display_name))
                conn.executemany(
                    "INSERT INTO chat_handle_join (chat_id, handle_id) VALUES (?, ?)",
                    [(chat_id, handle_id) for handle_id in handle_ids],
                )
        return path

    return _make


@pytest.fixture
def make_addressbook(tmp_path):
    def _make(records, phones=(), emails=(), external_files=None):
        source = tmp_path / "Sources" / "4F1B9C2E-SOURCE"
        source.mkdir(parents=True)
        external_dir = source / ".AddressBook-v22_SUPPORT" / "_EXTERNAL_DATA"
        external_dir.mkdir(parents=True)
        for name, payload in (external_files or {}).items():
            (external_dir / name).write_bytes(payload)

        path = source / "AddressBook-v22.abcddb"
        with sqlite3.connect(path) as conn:
            conn.executescript(ADDRESSBOOK_SCHEMA)
            conn.executemany(
                "INSERT INTO ZABCDRECORD (Z_PK, ZFIRSTNAME, ZLASTNAME, ZTHUMBNAILIMAGEDATA)"
                " VALUES (?, ?, ?, ?)",
                records,
            )
            conn.executemany("INSERT INTO ZABCDPHONENUMBER (ZOWNER, ZFULLNUMBER) VALUES (?, ?)", phones)
            conn.executemany("INSERT INTO ZABCDEMAILADDRESS (ZOWNER, ZADDRESS) VALUES (?, ?)", emails)
        return path

    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_url=API_URL,
        identity_url=IDENTITY_URL,
        api_key="anon-key",
        chat_db=tmp_path / "chat.db",
        addressbook_dir=tmp_path / "Sources",
        state_dir=tmp_path / "state",
        http_timeout=5.0,
        batch_size=500,
    )


class FakeBackend:
    """In-memory identity provider plus application API for ``httpx.MockTransport``.

    Identity endpoints are built in; API routes are registered per test in
    ``routes`` keyed by ``(method, path)``.
    """

    def __init__(self):
        self.access_token = "access-1"
        self.refresh_token = "refresh-1"
        self.user = {"id": "user-1", "email": "alice@example.com"}
        self.refresh_status = 200
        self.refresh_delay = 0.0
        self.refresh_calls = 0
        self.routes = {}
        self.requests = []

    def expire_access_token(self):
        self.access_token = "access-expired"

    @property
    def api_requests(self):
        return [request for request in self.requests if request.url.host == "api.test"]

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    async def __call__(self, request):
        self.requests.append(request)
        if request.url.host == "identity.test":
            return await self._identity(request)

        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "no route"})
        return handler(request)

    async def _identity(self, request):
        if request.url.path == "/auth/v1/user":
            if request.headers.get("authorization") == f"Bearer {self.access_token}":
                return httpx.Response(200, json=self.user)
            return httpx.Response(401, json={"error": "invalid JWT"})

        if request.url.path == "/auth/v1/token":
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            body = orjson.loads(request.content)
            if self.refresh_status != 200 or body.get("refresh_token") != self.refresh_token:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.access_token = f"access-{self.refresh_calls + 1}"
            self.refresh_token = f"refresh-{self.refresh_calls + 1}"
            return httpx.Response(
                200,
                json={
                    "access_token": self.access_token,
                    "refresh_token": self.refresh_token,
                    "user": self.user,
                },
            )

        return httpx.Response(404)


def respond_in_sequence(*responses):
    """Route handler answering with ``(status, body)`` pairs in order, repeating the last."""

    calls = []

    def _handler(request):
        calls.append(request)
        status, body = responses[min(len(calls), len(responses)) - 1]
        return httpx.Response(status, json=body)

    _handler.calls = calls
    return _handler


@pytest.fixture
def backend():
    return FakeBackend()
