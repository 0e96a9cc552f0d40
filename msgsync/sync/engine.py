from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable
from datetime import UTC, datetime
import logging
from typing import Protocol
import uuid

from msgsync.core.errors import RejectedMutation, SyncError
from msgsync.core.settings import Settings, get_settings
from msgsync.schemas.messages import Message, Reply, Scope, SendMessageRequest
from msgsync.schemas.sync import Confirmed, DeltaBatch, OutboundSend, Rejected, SyncScopes
from msgsync.sync.fetcher import DeltaFetcher
from msgsync.sync.notifications import NotificationDecider, Notifier
from msgsync.sync.publisher import Observer, Snapshot, SnapshotPublisher
from msgsync.sync.read_state import ReadStateTracker
from msgsync.sync.reconciliation import ReconciliationEngine
from msgsync.sync.scheduler import PollScheduler
from msgsync.sync.threads import ThreadCache, ThreadState
from msgsync.sync.watermark import WatermarkStore

logger = logging.getLogger(__name__)


class SyncTransport(Protocol):
    async def list_scope_messages(self, scope: Scope, *, limit: int = 50, offset: int = 0) -> list[Message]: ...

    async def poll_messages(self, *, since: datetime, scopes: SyncScopes) -> DeltaBatch: ...

    async def send_message(self, scope: Scope, request: SendMessageRequest) -> Message: ...

    async def mark_read(self, message_id: str) -> None: ...

    async def create_reply(self, message_id: str, content: str) -> Reply: ...

    async def list_replies(self, message_id: str) -> list[Reply]: ...

    async def edit_message(self, message_id: str, content: str) -> Message: ...

    async def delete_message(self, message_id: str) -> None: ...


def _local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


class MessageSyncEngine:
    def __init__(
        self,
        *,
        transport: SyncTransport,
        local_user_id: str,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        watermark: WatermarkStore | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._local_user_id = local_user_id
        self._notifier = notifier
        self._watermark = watermark or WatermarkStore()
        self._reconciler = ReconciliationEngine()
        self._threads = ThreadCache(transport.list_replies, max_entries=self._settings.thread_cache_max_entries)
        self._read_state = ReadStateTracker()
        self._notifications = NotificationDecider(preview_length=self._settings.notification_preview_length)
        self._publisher = SnapshotPublisher()
        self._scheduler = PollScheduler(
            fetcher=DeltaFetcher(transport),
            watermark=self._watermark,
            sink=self,
            poll_interval_sec=self._settings.poll_interval_ms / 1000.0,
            max_interval_sec=self._settings.poll_max_interval_ms / 1000.0,
        )
        self._messages: list[Message] = []
        self._notified_ids: set[str] = set()
        self._outbound: dict[str, OutboundSend] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._started = False
        self._stopped = False

    @property
    def local_user_id(self) -> str:
        return self._local_user_id

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    @property
    def watermark(self) -> WatermarkStore:
        return self._watermark

    @property
    def read_state(self) -> ReadStateTracker:
        return self._read_state

    @property
    def notified_ids(self) -> frozenset[str]:
        return frozenset(self._notified_ids)

    def outbound(self, client_message_id: str) -> OutboundSend | None:
        return self._outbound.get(client_message_id)

    async def start(self, scopes: SyncScopes | None = None, *, load_history: bool = True) -> None:
        if scopes is not None:
            self._scheduler.set_scopes(scopes, poll=False)
        self._stopped = False
        logger.info("Sync session starting user_id=%s", self._local_user_id)
        if load_history:
            await self._load_scopes(self._scheduler.scopes.scopes())
        await self._scheduler.start()
        self._started = True

    async def stop(self) -> None:
        self._stopped = True
        self._started = False
        await self._scheduler.stop()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._read_state.clear()
        logger.info("Sync session stopped user_id=%s", self._local_user_id)

    async def join(self) -> None:
        await self._scheduler.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def poll_now(self) -> bool:
        return await self._scheduler.poll_now()

    async def set_scopes(self, team_ids: Iterable[str], org_ids: Iterable[str]) -> bool:
        scopes = SyncScopes(team_ids=list(team_ids), org_ids=list(org_ids))
        previous = set(self._scheduler.scopes.scopes())
        changed = self._scheduler.set_scopes(scopes, poll=self._started)
        if not changed:
            return False
        added = [scope for scope in scopes.scopes() if scope not in previous]
        if added and self._started:
            self._spawn(self._load_scopes(added))
        return True

    async def resync(self) -> None:
        self._watermark.reset(datetime.now(UTC))
        await self._load_scopes(self._scheduler.scopes.scopes())

    def subscribe(self, observer: Observer, *, replay: bool = True) -> Callable[[], None]:
        unsubscribe = self._publisher.subscribe(observer)
        if replay:
            try:
                observer(self.snapshot())
            except Exception as exc:
                logger.warning("Snapshot observer failed on replay error=%s", exc)
        return unsubscribe

    def snapshot(self) -> Snapshot:
        return tuple(self._messages)

    def publish(self) -> None:
        self._publisher.publish(self._messages)

    def message(self, message_id: str) -> Message | None:
        return next((message for message in self._messages if message.id == message_id), None)

    def thread(self, message_id: str) -> ThreadState | None:
        return self._threads.state(message_id)

    def unread_count(self) -> int:
        return sum(
            1
            for message in self._messages
            if not message.pending
            and message.sender_id != self._local_user_id
            and not message.read_by_local_user
            and message.read_at is None
        )

    def apply_batch(self, batch: DeltaBatch) -> None:
        if not batch.messages:
            return
        existing_ids = {message.id for message in self._messages}

        try:
            self._messages = self._reconciler.merge(self._messages, batch.messages)
            self._confirm_outbound(batch.messages)
        except Exception:
            logger.exception("Reconciliation stage failed")

        merged = self._lookup(message.id for message in batch.messages)

        try:
            for message_id in sorted(self._threads.reconcile(batch.messages)):
                current = self.message(message_id)
                reply_count = current.reply_count if current is not None else 0
                self._spawn(self._refresh_thread(message_id, reply_count))
        except Exception:
            logger.exception("Thread reconciliation stage failed")

        try:
            for message_id in self._read_state.process(merged, self._local_user_id):
                self._spawn(self._mark_read_in_background(message_id))
        except Exception:
            logger.exception("Read-state stage failed")

        try:
            for message in self._notifications.evaluate(
                merged,
                self._local_user_id,
                self._notified_ids,
                existing_ids=existing_ids,
            ):
                self._spawn(self._raise_notification(message))
        except Exception:
            logger.exception("Notification stage failed")

    def _confirm_outbound(self, delta: Iterable[Message]) -> None:
        for message in delta:
            outbound = self._outbound.get(message.client_message_id or "")
            if outbound is not None and not isinstance(outbound.state, Confirmed):
                outbound.state = Confirmed(server_id=message.id)
                logger.debug(
                    "Outbound send confirmed by delta message_id=%s client_message_id=%s",
                    message.id,
                    outbound.client_message_id,
                )

    def _lookup(self, message_ids: Iterable[str]) -> list[Message]:
        wanted = list(dict.fromkeys(message_ids))
        by_id = {message.id: message for message in self._messages}
        return [by_id[message_id] for message_id in wanted if message_id in by_id]

    def _spawn(self, coroutine: Coroutine[object, object, None]) -> None:
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_thread(self, message_id: str, reply_count: int) -> None:
        try:
            replies = await self._threads.refresh(message_id, reply_count=reply_count)
        except SyncError as exc:
            logger.warning("Reply refresh failed message_id=%s error=%s", message_id, exc)
            return
        if self._stopped:
            return
        self._raise_reply_count(message_id, len(replies))
        self.publish()

    async def _mark_read_in_background(self, message_id: str) -> None:
        try:
            await self._transport.mark_read(message_id)
        except SyncError as exc:
            self._read_state.failed(message_id)
            logger.warning("Mark-read failed message_id=%s error=%s", message_id, exc)
            return
        self._read_state.succeeded(message_id)
        if self._stopped:
            return
        self._messages = self._reconciler.patch(self._messages, message_id, {"read_by_local_user": True})
        self.publish()

    async def _raise_notification(self, message: Message) -> None:
        if self._notifier is None:
            return
        notification = self._notifications.build(message)
        try:
            await self._notifier.notify(notification)
        except Exception as exc:
            logger.warning("Local notification failed message_id=%s error=%s", message.id, exc)

    def _raise_reply_count(self, message_id: str, reply_count: int) -> None:
        current = self.message(message_id)
        if current is None or reply_count <= current.reply_count:
            return
        self._messages = self._reconciler.patch(self._messages, message_id, {"reply_count": reply_count})

    async def load_scope(self, scope: Scope) -> list[Message]:
        messages = await self._transport.list_scope_messages(scope, limit=self._settings.initial_page_size)
        if self._stopped:
            return messages
        self._messages = self._reconciler.merge(self._messages, messages)
        merged = self._lookup(message.id for message in messages)
        for message_id in self._read_state.process(merged, self._local_user_id):
            self._spawn(self._mark_read_in_background(message_id))
        self.publish()
        logger.info(
            "Scope history loaded scope_type=%s scope_id=%s messages=%s",
            scope.scope_type.value,
            scope.scope_id,
            len(messages),
        )
        return merged

    async def _load_scopes(self, scopes: list[Scope]) -> None:
        for scope in scopes:
            try:
                await self.load_scope(scope)
            except SyncError as exc:
                logger.warning(
                    "Scope history load failed scope_type=%s scope_id=%s error=%s",
                    scope.scope_type.value,
                    scope.scope_id,
                    exc,
                )

    async def expand_thread(self, message_id: str) -> list[Reply]:
        current = self.message(message_id)
        replies = await self._threads.expand(
            message_id,
            reply_count=current.reply_count if current is not None else 0,
        )
        self._raise_reply_count(message_id, len(replies))
        self.publish()
        return replies

    def collapse_thread(self, message_id: str) -> None:
        self._threads.collapse(message_id)

    def _validate_content(self, content: str) -> str:
        trimmed = content.strip()
        if not trimmed:
            raise RejectedMutation(code="invalid_content", message="Message content cannot be empty")
        if len(trimmed) > self._settings.message_max_length:
            raise RejectedMutation(
                code="invalid_content",
                message="Message content is too long",
                details={"max_length": self._settings.message_max_length},
            )
        return trimmed

    async def send_message(self, scope: Scope, content: str, *, is_announcement: bool = False) -> Message:
        content = self._validate_content(content)
        client_message_id = uuid.uuid4().hex
        outbound = OutboundSend(client_message_id=client_message_id, scope=scope, content=content)
        self._outbound[client_message_id] = outbound
        placeholder = Message(
            id=_local_id(),
            scope_type=scope.scope_type,
            scope_id=scope.scope_id,
            sender_id=self._local_user_id,
            content=content,
            created_at=datetime.now(UTC),
            is_announcement=is_announcement,
            client_message_id=client_message_id,
            read_by_local_user=True,
            pending=True,
        )
        self._messages = self._reconciler.insert(self._messages, placeholder)
        self.publish()
        logger.info(
            "Send message attempt scope_type=%s scope_id=%s client_message_id=%s",
            scope.scope_type.value,
            scope.scope_id,
            client_message_id,
        )

        try:
            message = await self._transport.send_message(
                scope,
                SendMessageRequest(
                    content=content,
                    is_announcement=is_announcement,
                    client_message_id=client_message_id,
                ),
            )
        except SyncError as exc:
            if isinstance(outbound.state, Confirmed):
                logger.warning(
                    "Send response failed after delta confirmed client_message_id=%s error=%s",
                    client_message_id,
                    exc,
                )
                confirmed = self.message(outbound.state.server_id)
                if confirmed is not None:
                    return confirmed
            outbound.state = Rejected(reason=exc.message)
            self._messages = self._reconciler.remove(self._messages, placeholder.id)
            self.publish()
            logger.warning("Send message rejected client_message_id=%s error=%s", client_message_id, exc)
            raise

        outbound.state = Confirmed(server_id=message.id)
        if message.client_message_id is None:
            message = message.model_copy(update={"client_message_id": client_message_id})
        self._messages = self._reconciler.merge(self._messages, [message])
        self.publish()
        logger.info("Send message confirmed message_id=%s client_message_id=%s", message.id, client_message_id)
        return self.message(message.id) or message

    async def send_reply(self, message_id: str, content: str) -> Reply:
        content = self._validate_content(content)
        placeholder = Reply(
            id=_local_id(),
            parent_id=message_id,
            sender_id=self._local_user_id,
            content=content,
            created_at=datetime.now(UTC),
            pending=True,
        )
        self._threads.append_reply(message_id, placeholder)
        self.publish()

        try:
            reply = await self._transport.create_reply(message_id, content)
        except SyncError as exc:
            self._threads.remove_reply(message_id, placeholder.id)
            self.publish()
            logger.warning("Send reply rejected message_id=%s error=%s", message_id, exc)
            raise

        self._threads.remove_reply(message_id, placeholder.id)
        self._threads.append_reply(message_id, reply)
        current = self.message(message_id)
        try:
            replies = await self._threads.refresh(
                message_id,
                reply_count=current.reply_count if current is not None else 0,
            )
        except SyncError as exc:
            logger.warning("Reply refetch after send failed message_id=%s error=%s", message_id, exc)
            state = self._threads.state(message_id)
            replies = state.replies if state is not None else [reply]
        self._raise_reply_count(message_id, len(replies))
        self.publish()
        return reply

    async def edit_message(self, message_id: str, content: str) -> Message:
        content = self._validate_content(content)
        existing = self.message(message_id)
        if existing is None or existing.pending:
            raise RejectedMutation(code="message_not_found", message="Message is not available for editing")

        self._messages = self._reconciler.patch(self._messages, message_id, {"content": content})
        self.publish()
        try:
            updated = await self._transport.edit_message(message_id, content)
        except SyncError as exc:
            current = self.message(message_id)
            if current is not None and current.content == content:
                self._messages = self._reconciler.patch(self._messages, message_id, {"content": existing.content})
            self.publish()
            logger.warning("Edit message rejected message_id=%s error=%s", message_id, exc)
            raise

        self._messages = self._reconciler.merge(self._messages, [updated])
        self.publish()
        return self.message(message_id) or updated

    async def delete_message(self, message_id: str) -> None:
        existing = self.message(message_id)
        if existing is None or existing.pending:
            raise RejectedMutation(code="message_not_found", message="Message is not available for deletion")

        self._messages = self._reconciler.remove(self._messages, message_id)
        self.publish()
        try:
            await self._transport.delete_message(message_id)
        except SyncError as exc:
            if self.message(message_id) is None:
                self._messages = self._reconciler.insert(self._messages, existing)
            self.publish()
            logger.warning("Delete message rejected message_id=%s error=%s", message_id, exc)
            raise
        self._threads.retain(message.id for message in self._messages)
        logger.info("Message deleted message_id=%s", message_id)

    async def mark_read(self, message_id: str) -> None:
        await self._transport.mark_read(message_id)
        self._read_state.succeeded(message_id)
        self._messages = self._reconciler.patch(self._messages, message_id, {"read_by_local_user": True})
        self.publish()
