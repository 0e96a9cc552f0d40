from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from msgsync.schemas.messages import Message, Scope, ScopeType, ensure_aware


def _dedupe(values: list[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for item in values:
        trimmed = str(item).strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        normalized.append(trimmed)
    return normalized


class SyncScopes(BaseModel):
    model_config = ConfigDict(frozen=True)

    team_ids: tuple[str, ...] = ()
    org_ids: tuple[str, ...] = ()

    @field_validator("team_ids", "org_ids", mode="before")
    @classmethod
    def normalize_ids(cls, value: object) -> object:
        if value is None:
            return ()
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(_dedupe(list(value)))
        return value

    def is_empty(self) -> bool:
        return not self.team_ids and not self.org_ids

    def scopes(self) -> list[Scope]:
        return [Scope(scope_type=ScopeType.team, scope_id=team_id) for team_id in self.team_ids] + [
            Scope(scope_type=ScopeType.organization, scope_id=org_id) for org_id in self.org_ids
        ]


class DeltaBatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: list[Message] = Field(default_factory=list)
    polled_at: datetime

    @field_validator("polled_at")
    @classmethod
    def normalize_polled_at(cls, value: datetime) -> datetime:
        return ensure_aware(value)


@dataclass(frozen=True, slots=True)
class Pending:
    client_message_id: str


@dataclass(frozen=True, slots=True)
class Confirmed:
    server_id: str


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: str


OutboundState = Pending | Confirmed | Rejected


@dataclass(slots=True)
class OutboundSend:
    client_message_id: str
    scope: Scope
    content: str
    state: OutboundState = field(init=False)

    def __post_init__(self) -> None:
        self.state = Pending(client_message_id=self.client_message_id)
