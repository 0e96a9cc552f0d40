from __future__ import annotations

from collections.abc import Iterable
import logging

from msgsync.schemas.messages import Message

logger = logging.getLogger(__name__)


class ReadStateTracker:
    def __init__(self) -> None:
        self._pending: set[str] = set()

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def process(self, delta: Iterable[Message], local_user_id: str) -> list[str]:
        to_mark: list[str] = []
        for message in delta:
            if message.sender_id == local_user_id or message.pending:
                continue
            if message.id in self._pending:
                continue
            if message.read_by_local_user or message.read_at is not None:
                continue
            self._pending.add(message.id)
            to_mark.append(message.id)
        if to_mark:
            logger.debug("Messages queued for mark-read count=%s pending=%s", len(to_mark), len(self._pending))
        return to_mark

    def succeeded(self, message_id: str) -> None:
        self._pending.discard(message_id)

    def failed(self, message_id: str) -> None:
        self._pending.discard(message_id)
        logger.debug("Mark-read released for retry message_id=%s", message_id)

    def clear(self) -> None:
        self._pending.clear()
