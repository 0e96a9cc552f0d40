from __future__ import annotations

from collections.abc import Container, Iterable
import logging
from typing import Protocol

from msgsync.schemas.messages import Message
from msgsync.schemas.notifications import LocalNotification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, notification: LocalNotification) -> None: ...


class NotificationDecider:
    def __init__(self, *, preview_length: int = 100) -> None:
        self._preview_length = preview_length

    def evaluate(
        self,
        delta: Iterable[Message],
        local_user_id: str,
        already_notified_ids: set[str],
        *,
        existing_ids: Container[str] = frozenset(),
    ) -> list[Message]:
        to_notify: list[Message] = []
        for message in delta:
            if message.id in existing_ids:
                continue
            if message.sender_id == local_user_id:
                continue
            if message.id in already_notified_ids:
                continue
            already_notified_ids.add(message.id)
            to_notify.append(message)
        if to_notify:
            logger.debug("Messages selected for notification count=%s", len(to_notify))
        return to_notify

    def build(self, message: Message) -> LocalNotification:
        sender = message.sender_display_name or message.sender_id
        return LocalNotification(
            title=f"New message from {sender}",
            body=message.content[: self._preview_length],
            data={"message_id": message.id},
        )
