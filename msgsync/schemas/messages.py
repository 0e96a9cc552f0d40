from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ScopeType(str, Enum):
    team = "team"
    organization = "organization"
    direct = "direct"


class Scope(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope_type: ScopeType
    scope_id: str = Field(min_length=1, max_length=64)


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(alias="message_id", min_length=1)
    scope_type: ScopeType = Field(default=ScopeType.team, alias="context_type")
    scope_id: str = Field(default="", alias="context_id")
    sender_id: str
    sender_display_name: str = Field(default="", alias="sender_name")
    content: str
    created_at: datetime
    is_announcement: bool = False
    read_count: int = 0
    total_recipients: int = 0
    reply_count: int = 0
    read_at: datetime | None = None
    client_message_id: str | None = None

    read_by_local_user: bool = Field(default=False, exclude=True)
    pending: bool = Field(default=False, exclude=True)

    @field_validator("scope_id", "sender_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("read_count", "total_recipients", "reply_count", mode="before")
    @classmethod
    def coerce_counter(cls, value: object) -> object:
        if value is None:
            return 0
        return value

    @field_validator("created_at", "read_at")
    @classmethod
    def normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)


class Reply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field(alias="message_id", min_length=1)
    parent_id: str = Field(default="", alias="parent_message_id")
    sender_id: str
    sender_display_name: str = Field(default="", alias="sender_name")
    content: str
    created_at: datetime

    pending: bool = Field(default=False, exclude=True)

    @field_validator("parent_id", "sender_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("created_at")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=2000)
    is_announcement: bool = Field(default=False, serialization_alias="isAnnouncement")
    client_message_id: str = Field(min_length=8, max_length=64)


class ContentRequest(BaseModel):
    content: str = Field(min_length=1, max_length=2000)


class MessageListResponse(BaseModel):
    messages: list[Message] = Field(default_factory=list)


class ReplyListResponse(BaseModel):
    replies: list[Reply] = Field(default_factory=list)
