from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_CHAT_DB = Path.home() / "Library" / "Messages" / "chat.db"
DEFAULT_ADDRESSBOOK_DIR = (
    Path.home() / "Library" / "Application Support" / "AddressBook" / "Sources"
)
DEFAULT_STATE_DIR = Path.home() / ".hearth-sync"


def _path_from_env(name: str, default: Path) -> Path:
    value = os.getenv(name)
    return Path(value).expanduser() if value else default


class Settings(BaseModel):
    """Runtime configuration for the sync client."""

    api_url: str = Field(
        default_factory=lambda: os.getenv("HEARTH_API_URL", "http://localhost:3000/api")
    )
    identity_url: str = Field(
        default_factory=lambda: os.getenv(
            "HEARTH_IDENTITY_URL", "https://pqlkkgtbvaegqqqnozvl.supabase.co"
        )
    )
    api_key: str = Field(default_factory=lambda: os.getenv("HEARTH_API_KEY", ""))
    chat_db: Path = Field(default_factory=lambda: _path_from_env("HEARTH_CHAT_DB", DEFAULT_CHAT_DB))
    addressbook_dir: Path = Field(
        default_factory=lambda: _path_from_env("HEARTH_ADDRESSBOOK_DIR", DEFAULT_ADDRESSBOOK_DIR)
    )
    state_dir: Path = Field(
        default_factory=lambda: _path_from_env("HEARTH_STATE_DIR", DEFAULT_STATE_DIR)
    )
    http_timeout: float = Field(
        default_factory=lambda: float(os.getenv("HEARTH_HTTP_TIMEOUT", "30"))
    )
    batch_size: int = Field(
        default_factory=lambda: int(os.getenv("HEARTH_SYNC_BATCH_SIZE", "500"))
    )
    log_level: str = Field(default_factory=lambda: os.getenv("HEARTH_LOG_LEVEL", "INFO"))

    @property
    def session_file(self) -> Path:
        return self.state_dir / "auth.json"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
