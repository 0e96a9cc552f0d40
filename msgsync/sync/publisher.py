from __future__ import annotations

from collections.abc import Callable, Sequence
import logging

from msgsync.schemas.messages import Message

logger = logging.getLogger(__name__)

Snapshot = tuple[Message, ...]
Observer = Callable[[Snapshot], object]


class SnapshotPublisher:
    def __init__(self) -> None:
        self._observers: dict[int, Observer] = {}
        self._next_token = 0

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._observers[token] = observer
        logger.debug("Snapshot observer registered token=%s observers=%s", token, len(self._observers))

        def unsubscribe() -> None:
            if self._observers.pop(token, None) is not None:
                logger.debug("Snapshot observer unregistered token=%s", token)

        return unsubscribe

    def publish(self, messages: Sequence[Message]) -> int:
        snapshot: Snapshot = tuple(messages)
        delivered = 0
        for token, observer in list(self._observers.items()):
            try:
                observer(snapshot)
            except Exception as exc:
                logger.warning("Snapshot observer failed token=%s error=%s", token, exc)
                continue
            delivered += 1
        logger.debug("Snapshot published messages=%s delivered=%s", len(snapshot), delivered)
        return delivered

    def observer_count(self) -> int:
        return len(self._observers)
