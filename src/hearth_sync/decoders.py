"""Decoders for the two binary blob formats read by the client.

``attributedBody`` blobs in chat.db are typedstream-serialized
NSAttributedStrings. The visible text sits at a fixed offset from the first
``NSString`` class marker: the byte at ``marker + 13`` holds its length and the
UTF-8 text starts at ``marker + 14``. The offsets are empirical and tied to
the serializer version macOS currently writes; keep them as-is unless a
structural parser replaces this one.

AddressBook avatar blobs (``ZTHUMBNAILIMAGEDATA``) are either inline image
bytes behind a ``0x01`` tag byte or a ``0x02`` tag followed by the name of a
file in the database's ``_EXTERNAL_DATA`` directory.

Both decoders are best-effort: malformed input degrades to an empty value.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from .errors import DecodeFailure
from .logging import get_logger
from .models import ContactImage

logger = get_logger("hearth_sync.decoders")

NSSTRING_MARKER = b"NSString"
LENGTH_OFFSET = 13
TEXT_OFFSET = 14

INLINE_IMAGE_TAG = 0x01
EXTERNAL_IMAGE_TAG = 0x02
EXTERNAL_REFERENCE_LENGTH = 38
MIN_IMAGE_LENGTH = 100

DEFAULT_MIME_TYPE = "image/jpeg"
_MAGIC_BYTES = (
    (b"\xff\xd8", "image/jpeg"),
    (b"\x89\x50", "image/png"),
    (b"\x49\x49", "image/tiff"),
    (b"\x4d\x4d", "image/tiff"),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_LEADING_REPLACEMENT = re.compile(r"^[\ufffd\uffff\ufffe]+")
_TRAILING_REPLACEMENT = re.compile(r"[\ufffd\uffff\ufffe]+.*$", re.DOTALL)
_OBJECT_REPLACEMENT = "\ufffc"


def _sniff_mime_type(data: bytes) -> Optional[str]:
    for magic, mime_type in _MAGIC_BYTES:
        if data.startswith(magic):
            return mime_type
    return None


def detect_mime_type(data: bytes) -> str:
    """Return the image mime type for ``data`` from its magic bytes.

    Unknown prefixes fall back to JPEG, the format Contacts writes by default.
    """

    return _sniff_mime_type(data) or DEFAULT_MIME_TYPE


def _clean_text(text: str) -> str:
    text = _CONTROL_CHARS.sub("", text)
    text = _LEADING_REPLACEMENT.sub("", text)
    text = _TRAILING_REPLACEMENT.sub("", text)
    text = text.replace(_OBJECT_REPLACEMENT, "")
    return text.strip()


def _parse_message_text(data: bytes) -> str:
    marker_index = data.find(NSSTRING_MARKER)
    if marker_index == -1:
        raise DecodeFailure("NSString marker not found")

    length_index = marker_index + LENGTH_OFFSET
    if length_index >= len(data):
        raise DecodeFailure("length byte out of range")

    length = data[length_index]
    text_start = marker_index + TEXT_OFFSET
    text_end = text_start + length
    if length == 0 or text_end > len(data):
        raise DecodeFailure(f"text slice {text_start}:{text_end} exceeds {len(data)} bytes")

    return _clean_text(data[text_start:text_end].decode("utf-8", errors="replace"))


def decode_message_text(blob: Optional[bytes]) -> str:
    """Extract the visible text from an ``attributedBody`` blob.

    Returns an empty string for missing or malformed input; never raises.
    """

    if not blob:
        return ""

    try:
        return _parse_message_text(bytes(blob))
    except DecodeFailure as exc:
        logger.debug("attributed_body_undecodable", reason=str(exc), length=len(blob))
    except Exception:
        logger.debug("attributed_body_decode_failed", length=len(blob), exc_info=True)
    return ""


def _read_external_image(data: bytes, external_data_dir: Optional[Path]) -> ContactImage:
    if external_data_dir is None:
        raise DecodeFailure("external reference without a data directory")

    reference = data[1:EXTERNAL_REFERENCE_LENGTH].decode("ascii").rstrip("\x00").strip()
    if not reference or "/" in reference or reference.startswith("."):
        raise DecodeFailure(f"invalid external reference {reference!r}")

    path = Path(external_data_dir) / reference
    if not path.is_file():
        raise DecodeFailure(f"external image missing: {path}")

    payload = path.read_bytes()
    if not payload:
        raise DecodeFailure(f"external image empty: {path}")
    return ContactImage(data=payload, mime_type=detect_mime_type(payload))


def _parse_avatar(data: bytes, external_data_dir: Optional[Path]) -> ContactImage:
    if len(data) <= 1:
        raise DecodeFailure("avatar blob too short")

    tag = data[0]
    if tag == INLINE_IMAGE_TAG and len(data) > MIN_IMAGE_LENGTH:
        payload = data[1:]
        return ContactImage(data=payload, mime_type=detect_mime_type(payload))

    if tag == EXTERNAL_IMAGE_TAG and len(data) == EXTERNAL_REFERENCE_LENGTH:
        return _read_external_image(data, external_data_dir)

    if len(data) > MIN_IMAGE_LENGTH:
        mime_type = _sniff_mime_type(data)
        if mime_type is not None:
            return ContactImage(data=data, mime_type=mime_type)

    raise DecodeFailure(f"unrecognized avatar layout (tag={tag:#04x}, length={len(data)})")


def decode_avatar_blob(
    buffer: Optional[bytes], external_data_dir: Optional[Path] = None
) -> Optional[ContactImage]:
    """Decode an AddressBook avatar blob into image bytes and a mime type.

    Returns ``None`` when the blob is absent, unrecognized or points at a
    missing external file; never raises.
    """

    if not buffer:
        return None

    try:
        return _parse_avatar(bytes(buffer), external_data_dir)
    except DecodeFailure as exc:
        logger.debug("avatar_undecodable", reason=str(exc))
    except Exception:
        logger.debug("avatar_decode_failed", length=len(buffer), exc_info=True)
    return None


__all__ = ["decode_message_text", "decode_avatar_blob", "detect_mime_type"]
