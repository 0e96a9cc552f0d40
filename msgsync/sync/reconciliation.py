from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging

from msgsync.schemas.messages import Message

logger = logging.getLogger(__name__)


def _sort_key(message: Message) -> tuple[object, str]:
    return (message.created_at, message.id)


def _index(delta: Iterable[Message]) -> dict[str, Message]:
    indexed: dict[str, Message] = {}
    for message in delta:
        indexed[message.id] = message
    return indexed


def _apply_update(existing: Message, incoming: Message) -> Message:
    return existing.model_copy(
        update={
            "content": incoming.content,
            "read_count": incoming.read_count,
            "total_recipients": incoming.total_recipients,
            "reply_count": max(existing.reply_count, incoming.reply_count),
            "sender_display_name": incoming.sender_display_name or existing.sender_display_name,
            "read_at": incoming.read_at or existing.read_at,
            "client_message_id": existing.client_message_id or incoming.client_message_id,
            "read_by_local_user": existing.read_by_local_user or incoming.read_at is not None,
            "pending": False,
        }
    )


def _from_server(incoming: Message, placeholder: Message | None) -> Message:
    read_by_local_user = incoming.read_at is not None
    if placeholder is not None:
        read_by_local_user = read_by_local_user or placeholder.read_by_local_user
    return incoming.model_copy(update={"read_by_local_user": read_by_local_user, "pending": False})


class ReconciliationEngine:
    def partition(self, local: Iterable[Message], delta: Iterable[Message]) -> tuple[list[str], list[str]]:
        local_ids = {message.id for message in local}
        appended: list[str] = []
        updated: list[str] = []
        for message_id in _index(delta):
            if message_id in local_ids:
                updated.append(message_id)
            else:
                appended.append(message_id)
        return appended, updated

    def merge(self, local: Iterable[Message], delta: Iterable[Message]) -> list[Message]:
        local = list(local)
        incoming = _index(delta)
        if not incoming:
            return sorted(local, key=_sort_key)

        placeholders: dict[str, Message] = {
            message.client_message_id: message
            for message in local
            if message.pending and message.client_message_id
        }
        confirmed_keys = {
            message.client_message_id
            for message in incoming.values()
            if message.client_message_id and message.client_message_id in placeholders
        }

        merged: list[Message] = []
        seen: set[str] = set()
        for message in local:
            if message.pending and message.client_message_id in confirmed_keys:
                continue
            update = incoming.get(message.id)
            merged.append(message if update is None else _apply_update(message, update))
            seen.add(message.id)

        appended = 0
        for message in incoming.values():
            if message.id in seen:
                continue
            placeholder = placeholders.get(message.client_message_id) if message.client_message_id else None
            merged.append(_from_server(message, placeholder))
            seen.add(message.id)
            appended += 1

        merged.sort(key=_sort_key)
        logger.debug(
            "Merged delta incoming=%s appended=%s replaced_placeholders=%s total=%s",
            len(incoming),
            appended,
            len(confirmed_keys),
            len(merged),
        )
        return merged

    def insert(self, local: Iterable[Message], message: Message) -> list[Message]:
        merged = [existing for existing in local if existing.id != message.id]
        merged.append(message)
        merged.sort(key=_sort_key)
        return merged

    def patch(self, local: Iterable[Message], message_id: str, update: Mapping[str, object]) -> list[Message]:
        return [message.model_copy(update=dict(update)) if message.id == message_id else message for message in local]

    def remove(self, local: Iterable[Message], message_id: str) -> list[Message]:
        return [message for message in local if message.id != message_id]
