from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .decoders import decode_message_text
from .errors import ExtractionFailed, SourceUnavailable
from .identity import ContactIndex, open_readonly
from .logging import get_logger
from .models import ConversationBundle, ExtractionResult, HandleSummary, Message, SyncCursor

logger = get_logger("hearth_sync.extraction")

APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
APPLE_EPOCH_OFFSET_SECONDS = 978_307_200
NANOSECONDS = 1_000_000_000
DEFAULT_LIMIT = 500

MESSAGES_QUERY = """
    SELECT
        m.ROWID AS message_id,
        COALESCE(m.text, '') AS text,
        m.attributedBody AS attributed_body,
        m.is_from_me,
        datetime(m.date / 1000000000 + 978307200, 'unixepoch') AS date,
        m.date AS raw_date,
        h.id AS handle_id,
        h.service
    FROM message m
    JOIN handle h ON m.handle_id = h.ROWID
    WHERE {where}
    ORDER BY m.ROWID ASC
    LIMIT ?
"""

HANDLES_QUERY = """
    SELECT
        h.id AS identifier,
        h.service,
        MAX(c.display_name) AS display_name,
        MAX(m.date) AS last_message_date
    FROM handle h
    LEFT JOIN chat_handle_join chj ON h.ROWID = chj.handle_id
    LEFT JOIN chat c ON chj.chat_id = c.ROWID
    LEFT JOIN message m ON m.handle_id = h.ROWID
    GROUP BY h.id
    ORDER BY last_message_date DESC
"""


def datetime_to_apple_ns(dt: datetime) -> int:
    """Convert a wall-clock datetime to chat.db's nanoseconds since 2001-01-01 UTC.

    Naive datetimes are taken as UTC. Sub-second precision is dropped.
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    unix_seconds = int(dt.timestamp())
    return (unix_seconds - APPLE_EPOCH_OFFSET_SECONDS) * NANOSECONDS


def apple_ns_to_datetime(raw_value: Optional[int]) -> Optional[datetime]:
    if not raw_value:
        return None
    return APPLE_EPOCH + timedelta(microseconds=int(raw_value) // 1_000)


def _where_clause(cursor: SyncCursor) -> tuple[str, tuple[Any, ...]]:
    if cursor.since_message_id is not None:
        return "m.ROWID > ?", (cursor.since_message_id,)
    if cursor.since_date is not None:
        return "m.date > ?", (datetime_to_apple_ns(cursor.since_date),)
    return "1=1", ()


def connect_chat_db(chat_db: Path) -> sqlite3.Connection:
    """Open chat.db read-only, raising ``SourceUnavailable`` when it cannot be read."""

    if not chat_db.exists():
        raise SourceUnavailable(chat_db, "iMessage database not found")
    try:
        conn = open_readonly(chat_db)
    except sqlite3.Error as exc:
        raise SourceUnavailable(chat_db, str(exc)) from exc
    try:
        conn.execute("SELECT 1 FROM message LIMIT 1").fetchall()
    except sqlite3.Error as exc:
        conn.close()
        raise SourceUnavailable(chat_db, str(exc)) from exc
    conn.row_factory = sqlite3.Row
    return conn


def check_access(chat_db: Path) -> None:
    """Raise ``SourceUnavailable`` unless chat.db can be opened and queried."""

    conn = connect_chat_db(chat_db)
    conn.close()


def _message_text(row: sqlite3.Row) -> str:
    text = row["text"] or ""
    if not text and row["attributed_body"]:
        text = decode_message_text(row["attributed_body"])
    return text


def group_rows(rows: List[sqlite3.Row], contacts: ContactIndex) -> List[ConversationBundle]:
    """Group message rows into one bundle per handle, preserving row order."""

    bundles: Dict[str, ConversationBundle] = {}
    for row in rows:
        handle_id = row["handle_id"]
        bundle = bundles.get(handle_id)
        if bundle is None:
            contact_name = contacts.name_for(handle_id)
            if contact_name:
                logger.debug("handle_matched", handle_id=handle_id, contact_name=contact_name)
            bundle = ConversationBundle(
                handle_id=handle_id,
                contact_name=contact_name,
                service=row["service"],
                last_message_date=row["date"],
            )
            bundles[handle_id] = bundle

        bundle.messages.append(
            Message(
                message_id=row["message_id"],
                text=_message_text(row),
                is_from_me=row["is_from_me"] == 1,
                date=row["date"],
                raw_date=row["raw_date"],
            )
        )
    return list(bundles.values())


def extract_since(
    chat_db: Path,
    cursor: Optional[SyncCursor] = None,
    limit: int = DEFAULT_LIMIT,
    contacts: Optional[ContactIndex] = None,
) -> ExtractionResult:
    """Read messages newer than ``cursor`` and group them per handle.

    At most ``limit`` messages are returned, in ascending id order; callers
    drain a backlog by calling again with the batch's highest id. Any open or
    query failure raises instead of returning a partial batch.
    """

    cursor = cursor or SyncCursor()
    contacts = contacts or ContactIndex()
    where, params = _where_clause(cursor)

    logger.debug("extract_since", cursor=cursor.kind, params=params, limit=limit)

    with closing(connect_chat_db(chat_db)) as conn:
        try:
            rows = conn.execute(MESSAGES_QUERY.format(where=where), (*params, limit)).fetchall()
        except sqlite3.Error as exc:
            raise ExtractionFailed(f"message query failed: {exc}") from exc

    if not rows:
        return ExtractionResult()

    bundles = group_rows(rows, contacts)
    logger.info("messages_extracted", total_messages=len(rows), handles=len(bundles))
    return ExtractionResult(contacts=bundles, total_messages=len(rows))


def list_handles(chat_db: Path) -> List[HandleSummary]:
    """List every handle in chat.db with its most recent message date."""

    with closing(connect_chat_db(chat_db)) as conn:
        try:
            rows = conn.execute(HANDLES_QUERY).fetchall()
        except sqlite3.Error as exc:
            raise ExtractionFailed(f"handle query failed: {exc}") from exc

    return [
        HandleSummary(
            identifier=row["identifier"],
            service=row["service"],
            display_name=row["display_name"] or None,
            last_message_date=row["last_message_date"],
            last_message_at=apple_ns_to_datetime(row["last_message_date"]),
        )
        for row in rows
    ]


__all__ = [
    "APPLE_EPOCH_OFFSET_SECONDS",
    "DEFAULT_LIMIT",
    "apple_ns_to_datetime",
    "check_access",
    "datetime_to_apple_ns",
    "extract_since",
    "group_rows",
    "list_handles",
]
