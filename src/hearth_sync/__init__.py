"""Incremental iMessage and contact sync client."""

from .decoders import decode_avatar_blob, decode_message_text, detect_mime_type  # noqa: F401
from .identity import ContactIndex, lookup_key, normalize_email, normalize_phone  # noqa: F401
from .service import SyncService  # noqa: F401
from .session import SessionManager, SessionStore  # noqa: F401
from .sync import SyncOrchestrator  # noqa: F401

__version__ = "0.1.0"
