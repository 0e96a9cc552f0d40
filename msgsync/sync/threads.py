from __future__ import annotations

from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
import logging

from msgsync.schemas.messages import Message, Reply

logger = logging.getLogger(__name__)

ReplyFetcher = Callable[[str], Awaitable[list[Reply]]]


@dataclass
class ThreadState:
    expanded: bool = False
    replies: list[Reply] = field(default_factory=list)
    last_known_reply_count: int = 0


def _ordered(replies: Iterable[Reply]) -> list[Reply]:
    return sorted(replies, key=lambda reply: (reply.created_at, reply.id))


class ThreadCache:
    def __init__(self, fetch_replies: ReplyFetcher, *, max_entries: int = 200) -> None:
        self._fetch_replies = fetch_replies
        self._max_entries = max_entries
        self._threads: OrderedDict[str, ThreadState] = OrderedDict()
        self._generations: dict[str, int] = {}

    def _ensure(self, message_id: str) -> ThreadState:
        state = self._threads.get(message_id)
        if state is None:
            state = ThreadState()
            self._threads[message_id] = state
            self._evict_overflow(keep=message_id)
        else:
            self._threads.move_to_end(message_id)
        return state

    def _evict_overflow(self, *, keep: str) -> None:
        while len(self._threads) > self._max_entries:
            candidates = [key for key in self._threads if key != keep]
            if not candidates:
                return
            victim = next((key for key in candidates if not self._threads[key].expanded), candidates[0])
            self._threads.pop(victim)
            self._generations.pop(victim, None)
            logger.debug("Thread cache evicted message_id=%s", victim)

    def reconcile(self, delta: Iterable[Message]) -> set[str]:
        needs_refresh: set[str] = set()
        for message in delta:
            state = self._threads.get(message.id)
            if state is None or not state.expanded:
                continue
            if message.reply_count > state.last_known_reply_count:
                needs_refresh.add(message.id)
        if needs_refresh:
            logger.debug("Threads needing reply refresh count=%s", len(needs_refresh))
        return needs_refresh

    async def _load(self, message_id: str, *, reply_count: int) -> list[Reply]:
        generation = self._generations.get(message_id, 0) + 1
        self._generations[message_id] = generation
        replies = _ordered(await self._fetch_replies(message_id))
        if self._generations.get(message_id) != generation:
            logger.debug("Discarding stale reply fetch message_id=%s", message_id)
            state = self._threads.get(message_id)
            return list(state.replies) if state is not None else replies

        state = self._ensure(message_id)
        state.replies = replies
        state.last_known_reply_count = max(len(replies), reply_count)
        logger.debug("Thread replies stored message_id=%s replies=%s", message_id, len(replies))
        return list(replies)

    async def expand(self, message_id: str, *, reply_count: int = 0) -> list[Reply]:
        replies = await self._load(message_id, reply_count=reply_count)
        self._ensure(message_id).expanded = True
        return replies

    async def refresh(self, message_id: str, *, reply_count: int = 0) -> list[Reply]:
        return await self._load(message_id, reply_count=reply_count)

    def collapse(self, message_id: str) -> None:
        state = self._threads.get(message_id)
        if state is not None:
            state.expanded = False

    def append_reply(self, message_id: str, reply: Reply) -> None:
        state = self._ensure(message_id)
        state.replies = _ordered([*state.replies, reply])

    def remove_reply(self, message_id: str, reply_id: str) -> None:
        state = self._threads.get(message_id)
        if state is not None:
            state.replies = [reply for reply in state.replies if reply.id != reply_id]

    def is_expanded(self, message_id: str) -> bool:
        state = self._threads.get(message_id)
        return state is not None and state.expanded

    def state(self, message_id: str) -> ThreadState | None:
        state = self._threads.get(message_id)
        if state is None:
            return None
        return replace(state, replies=list(state.replies))

    def retain(self, message_ids: Iterable[str]) -> None:
        keep = set(message_ids)
        for message_id in [key for key in self._threads if key not in keep]:
            self._threads.pop(message_id)
            self._generations.pop(message_id, None)

    def clear(self) -> None:
        self._threads.clear()
        self._generations.clear()
