from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Message(BaseModel):
    """A single row from the message datastore, read-only to the client."""

    message_id: int
    text: str = ""
    is_from_me: bool = False
    date: str | None = None
    raw_date: int | None = None


class ConversationBundle(BaseModel):
    """All messages for one handle within a batch; the unit pushed to the API."""

    handle_id: str
    contact_name: str | None = None
    service: str | None = None
    messages: List[Message] = Field(default_factory=list)
    last_message_date: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json")
        for message in payload["messages"]:
            message.pop("raw_date", None)
        return payload


class ExtractionResult(BaseModel):
    contacts: List[ConversationBundle] = Field(default_factory=list)
    total_messages: int = 0

    @property
    def handles(self) -> List[str]:
        return [bundle.handle_id for bundle in self.contacts]

    @property
    def max_message_id(self) -> int | None:
        ids = [message.message_id for bundle in self.contacts for message in bundle.messages]
        return max(ids) if ids else None


class SyncCursor(BaseModel):
    """Position marker for incremental extraction.

    The message id is exact and always wins; the date is only an
    approximation used for a first sync.
    """

    since_message_id: int | None = None
    since_date: datetime | None = None

    @field_validator("since_message_id")
    @classmethod
    def ensure_positive_id(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            return None
        return value

    @property
    def kind(self) -> str:
        if self.since_message_id is not None:
            return "message_id"
        if self.since_date is not None:
            return "date"
        return "none"


class ContactImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class HandleSummary(BaseModel):
    identifier: str
    service: str | None = None
    display_name: str | None = None
    last_message_date: int | None = None
    last_message_at: datetime | None = None


class AuthSession(BaseModel):
    """Tokens and user for the signed-in account, persisted as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    user: Dict[str, Any] | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.user)

    @property
    def email(self) -> str | None:
        return (self.user or {}).get("email")

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


__all__ = [
    "Message",
    "ConversationBundle",
    "ExtractionResult",
    "SyncCursor",
    "ContactImage",
    "HandleSummary",
    "AuthSession",
]
