from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

from .config import Settings
from .decoders import decode_avatar_blob
from .logging import get_logger
from .models import ContactImage

logger = get_logger("hearth_sync.identity")

ADDRESSBOOK_DB_NAME = "AddressBook-v22.abcddb"
EXTERNAL_DATA_SUBDIR = Path(".AddressBook-v22_SUPPORT") / "_EXTERNAL_DATA"

_NON_DIGITS = re.compile(r"\D")

PHONE_NAME_QUERY = """
    SELECT r.ZFIRSTNAME, r.ZLASTNAME, p.ZFULLNUMBER
    FROM ZABCDRECORD r
    JOIN ZABCDPHONENUMBER p ON r.Z_PK = p.ZOWNER
    WHERE p.ZFULLNUMBER IS NOT NULL
"""

EMAIL_NAME_QUERY = """
    SELECT r.ZFIRSTNAME, r.ZLASTNAME, e.ZADDRESS
    FROM ZABCDRECORD r
    JOIN ZABCDEMAILADDRESS e ON r.Z_PK = e.ZOWNER
    WHERE e.ZADDRESS IS NOT NULL
"""

AVATAR_QUERY = """
    SELECT Z_PK, ZTHUMBNAILIMAGEDATA
    FROM ZABCDRECORD
    WHERE ZTHUMBNAILIMAGEDATA IS NOT NULL
"""

PHONE_OWNER_QUERY = """
    SELECT ZOWNER, ZFULLNUMBER
    FROM ZABCDPHONENUMBER
    WHERE ZFULLNUMBER IS NOT NULL
"""

EMAIL_OWNER_QUERY = """
    SELECT ZOWNER, ZADDRESS
    FROM ZABCDEMAILADDRESS
    WHERE ZADDRESS IS NOT NULL
"""


def normalize_phone(raw: str) -> str:
    """Reduce a phone number to its digits, dropping a leading US ``1``.

    International numbers keep all their digits; no country-specific
    validation is attempted.
    """

    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def normalize_email(raw: str) -> str:
    return (raw or "").lower()


def lookup_key(handle: str) -> str:
    """Return the normalized key used to look a message handle up in an index."""

    if "@" in handle:
        return normalize_email(handle)
    return normalize_phone(handle)


def _display_name(first: Optional[str], last: Optional[str]) -> str:
    return " ".join(part for part in (first or "", last or "") if part).strip()


def _iter_rows(conn: sqlite3.Connection, query: str) -> Iterable[tuple]:
    return conn.execute(query).fetchall()


def build_name_index(conn: sqlite3.Connection) -> Dict[str, str]:
    """Map normalized phone numbers and lowercased e-mails to ``First Last``.

    Phones are indexed before e-mails; a repeated key keeps the last record
    processed.
    """

    names: Dict[str, str] = {}

    for first, last, phone in _iter_rows(conn, PHONE_NAME_QUERY):
        full_name = _display_name(first, last)
        key = normalize_phone(phone)
        if full_name and key:
            names[key] = full_name

    for first, last, email in _iter_rows(conn, EMAIL_NAME_QUERY):
        full_name = _display_name(first, last)
        key = normalize_email(email)
        if full_name and key:
            names[key] = full_name

    return names


def build_image_index(
    conn: sqlite3.Connection, external_data_dir: Optional[Path] = None
) -> Dict[str, ContactImage]:
    """Map normalized phones and e-mails to decoded contact avatars.

    Records without a decodable avatar are skipped. A phone-derived entry is
    never replaced by an e-mail-derived one.
    """

    avatars: Dict[int, ContactImage] = {}
    for record_id, blob in _iter_rows(conn, AVATAR_QUERY):
        image = decode_avatar_blob(blob, external_data_dir)
        if image is not None:
            avatars[record_id] = image

    images: Dict[str, ContactImage] = {}
    if not avatars:
        return images

    for owner, phone in _iter_rows(conn, PHONE_OWNER_QUERY):
        image = avatars.get(owner)
        key = normalize_phone(phone)
        if image is not None and key:
            images[key] = image

    for owner, email in _iter_rows(conn, EMAIL_OWNER_QUERY):
        image = avatars.get(owner)
        key = normalize_email(email)
        if image is not None and key and key not in images:
            images[key] = image

    return images


def find_address_book_db(sources_dir: Path) -> Optional[Path]:
    """Return the first ``AddressBook-v22.abcddb`` below the Sources directory."""

    try:
        if not sources_dir.is_dir():
            logger.debug("addressbook_sources_missing", path=str(sources_dir))
            return None
        for source in sorted(sources_dir.iterdir()):
            candidate = source / ADDRESSBOOK_DB_NAME
            if source.is_dir() and candidate.exists():
                return candidate
    except OSError:
        logger.warning("addressbook_scan_failed", path=str(sources_dir), exc_info=True)
        return None

    logger.debug("addressbook_db_not_found", path=str(sources_dir))
    return None


def external_data_dir_for(db_path: Path) -> Path:
    return db_path.parent / EXTERNAL_DATA_SUBDIR


def open_readonly(path: Path) -> sqlite3.Connection:
    return sqlite3.connect(f"{Path(path).resolve().as_uri()}?mode=ro", uri=True)


@dataclass
class ContactIndex:
    """Name and avatar lookups built from the local AddressBook."""

    names: Dict[str, str] = field(default_factory=dict)
    images: Dict[str, ContactImage] = field(default_factory=dict)

    def name_for(self, handle: Optional[str]) -> Optional[str]:
        if not handle:
            return None
        return self.names.get(lookup_key(handle))

    def image_for(self, handle: Optional[str]) -> Optional[ContactImage]:
        if not handle:
            return None
        return self.images.get(lookup_key(handle))

    @classmethod
    def load(cls, settings: Settings, *, include_images: bool = False) -> "ContactIndex":
        """Build the index from the AddressBook, or an empty index if unreadable."""

        db_path = find_address_book_db(settings.addressbook_dir)
        if db_path is None:
            return cls()

        try:
            conn = open_readonly(db_path)
            try:
                names = build_name_index(conn)
                images = (
                    build_image_index(conn, external_data_dir_for(db_path))
                    if include_images
                    else {}
                )
            finally:
                conn.close()
        except sqlite3.Error:
            logger.warning("addressbook_read_failed", path=str(db_path), exc_info=True)
            return cls()

        logger.info(
            "addressbook_loaded",
            path=str(db_path),
            names=len(names),
            images=len(images),
        )
        return cls(names=names, images=images)


__all__ = [
    "normalize_phone",
    "normalize_email",
    "lookup_key",
    "build_name_index",
    "build_image_index",
    "find_address_book_db",
    "external_data_dir_for",
    "ContactIndex",
]
