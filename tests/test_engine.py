from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from msgsync.core.errors import RejectedMutation, TransportError
from msgsync.schemas.messages import Message, Reply, Scope, ScopeType, SendMessageRequest
from msgsync.schemas.notifications import LocalNotification
from msgsync.schemas.sync import Confirmed, DeltaBatch, Rejected, SyncScopes
from msgsync.sync.engine import MessageSyncEngine
from msgsync.sync.scheduler import SchedulerState
from msgsync.sync.watermark import WatermarkStore

T0 = datetime(2024, 1, 1, tzinfo=UTC)
TEAM = Scope(scope_type=ScopeType.team, scope_id="t1")


def _ts(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _message(message_id: str, seconds: int, **overrides) -> Message:
    values = {
        "id": message_id,
        "scope_id": "t1",
        "sender_id": "u2",
        "sender_display_name": "Bob",
        "content": f"content {message_id}",
        "created_at": _ts(seconds),
    }
    values.update(overrides)
    return Message(**values)


def _reply(reply_id: str, seconds: int, parent_id: str = "m1") -> Reply:
    return Reply(id=reply_id, parent_id=parent_id, sender_id="u2", content="reply", created_at=_ts(seconds))


class _FakeTransport:
    def __init__(self) -> None:
        self.poll_results: list[DeltaBatch] = []
        self.poll_calls: list[tuple[datetime, SyncScopes]] = []
        self.history: dict[str, list[Message]] = {}
        self.replies: dict[str, list[Reply]] = {}
        self.read_calls: list[str] = []
        self.sent: list[SendMessageRequest] = []
        self.edits: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.fail_mark_read = False
        self.send_error: Exception | None = None
        self.before_send_returns: Callable[[Message], None] | None = None
        self.mutation_error: Exception | None = None

    async def list_scope_messages(self, scope: Scope, *, limit: int = 50, offset: int = 0) -> list[Message]:
        return list(self.history.get(scope.scope_id, []))[offset : offset + limit]

    async def poll_messages(self, *, since: datetime, scopes: SyncScopes) -> DeltaBatch:
        self.poll_calls.append((since, scopes))
        if self.poll_results:
            return self.poll_results.pop(0)
        return DeltaBatch(messages=[], polled_at=since)

    async def send_message(self, scope: Scope, request: SendMessageRequest) -> Message:
        self.sent.append(request)
        if self.send_error is not None:
            raise self.send_error
        message = Message(
            id=f"srv-{len(self.sent)}",
            scope_type=scope.scope_type,
            scope_id=scope.scope_id,
            sender_id="u1",
            content=request.content,
            created_at=datetime.now(UTC),
            is_announcement=request.is_announcement,
            client_message_id=request.client_message_id,
        )
        if self.before_send_returns is not None:
            self.before_send_returns(message)
        return message

    async def mark_read(self, message_id: str) -> None:
        self.read_calls.append(message_id)
        if self.fail_mark_read:
            raise TransportError(status_code=503, message="Service unavailable")

    async def create_reply(self, message_id: str, content: str) -> Reply:
        if self.mutation_error is not None:
            raise self.mutation_error
        reply = Reply(
            id=f"r-{len(self.replies.get(message_id, [])) + 1}",
            parent_id=message_id,
            sender_id="u1",
            content=content,
            created_at=datetime.now(UTC),
        )
        self.replies.setdefault(message_id, []).append(reply)
        return reply

    async def list_replies(self, message_id: str) -> list[Reply]:
        return list(self.replies.get(message_id, []))

    async def edit_message(self, message_id: str, content: str) -> Message:
        self.edits.append((message_id, content))
        if self.mutation_error is not None:
            raise self.mutation_error
        return _message(message_id, 1, content=content, sender_id="u1")

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)
        if self.mutation_error is not None:
            raise self.mutation_error


class _FakeNotifier:
    def __init__(self) -> None:
        self.notifications: list[LocalNotification] = []

    async def notify(self, notification: LocalNotification) -> None:
        self.notifications.append(notification)


def _engine(settings, transport: _FakeTransport, notifier: _FakeNotifier | None = None) -> MessageSyncEngine:
    return MessageSyncEngine(
        transport=transport,
        local_user_id="u1",
        notifier=notifier,
        settings=settings,
        watermark=WatermarkStore(T0),
    )


def _ids(messages) -> list[str]:
    return [message.id for message in messages]


def test_poll_delta_flows_through_pipeline(settings):
    transport = _FakeTransport()
    transport.poll_results.append(
        DeltaBatch(messages=[_message("m1", 1), _message("m2", 2, sender_id="u1")], polled_at=_ts(5))
    )
    notifier = _FakeNotifier()
    engine = _engine(settings, transport, notifier)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    assert transport.poll_calls == [(T0, SyncScopes(team_ids=["t1"]))]
    assert _ids(engine.snapshot()) == ["m1", "m2"]
    assert engine.watermark.get() == _ts(5)
    assert transport.read_calls == ["m1"]
    assert [notification.data for notification in notifier.notifications] == [{"message_id": "m1"}]
    assert notifier.notifications[0].title == "New message from Bob"
    assert engine.message("m1").read_by_local_user is True
    assert engine.read_state.pending == frozenset()
    assert engine.unread_count() == 0


def test_repeated_delta_does_not_duplicate_or_renotify(settings):
    transport = _FakeTransport()
    transport.poll_results.extend(
        [
            DeltaBatch(messages=[_message("m1", 1)], polled_at=_ts(5)),
            DeltaBatch(messages=[_message("m1", 1, read_count=2)], polled_at=_ts(6)),
        ]
    )
    notifier = _FakeNotifier()
    engine = _engine(settings, transport, notifier)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.poll_now()
        await engine.join()
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    assert _ids(engine.snapshot()) == ["m1"]
    assert engine.message("m1").read_count == 2
    assert len(notifier.notifications) == 1
    assert transport.read_calls == ["m1"]
    assert engine.notified_ids == {"m1"}


def test_failed_mark_read_is_retried_on_next_delta(settings):
    transport = _FakeTransport()
    transport.fail_mark_read = True
    transport.poll_results.extend(
        [
            DeltaBatch(messages=[_message("m1", 1)], polled_at=_ts(5)),
            DeltaBatch(messages=[_message("m1", 1)], polled_at=_ts(6)),
        ]
    )
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.poll_now()
        await engine.join()
        transport.fail_mark_read = False
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    assert transport.read_calls == ["m1", "m1"]
    assert engine.message("m1").read_by_local_user is True


def test_history_load_merges_without_notifying(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m2", 2), _message("m1", 1, read_at=_ts(1))]
    notifier = _FakeNotifier()
    engine = _engine(settings, transport, notifier)

    async def scenario() -> list[Message]:
        loaded = await engine.load_scope(TEAM)
        await engine.join()
        return loaded

    loaded = asyncio.run(scenario())

    assert sorted(_ids(loaded)) == ["m1", "m2"]
    assert _ids(engine.snapshot()) == ["m1", "m2"]
    assert notifier.notifications == []
    assert transport.read_calls == ["m2"]


def test_messages_already_loaded_are_not_notified_when_polled(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1)]
    transport.poll_results.append(DeltaBatch(messages=[_message("m1", 1, read_count=1)], polled_at=_ts(5)))
    notifier = _FakeNotifier()
    engine = _engine(settings, transport, notifier)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.load_scope(TEAM)
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    assert notifier.notifications == []


def test_send_message_shows_placeholder_then_confirms(settings):
    transport = _FakeTransport()
    engine = _engine(settings, transport)
    snapshots = []
    engine.subscribe(snapshots.append, replay=False)

    message = asyncio.run(engine.send_message(TEAM, "  hello  "))

    assert snapshots[0][0].pending is True
    assert snapshots[0][0].content == "hello"
    assert message.id == "srv-1"
    assert message.pending is False
    assert _ids(engine.snapshot()) == ["srv-1"]
    assert transport.sent[0].content == "hello"
    outbound = engine.outbound(transport.sent[0].client_message_id)
    assert outbound is not None
    assert outbound.state == Confirmed(server_id="srv-1")
    assert engine.unread_count() == 0


def test_send_confirmed_by_delta_first_is_not_duplicated(settings):
    transport = _FakeTransport()
    engine = _engine(settings, transport)

    def deliver_by_poll(message: Message) -> None:
        engine.apply_batch(DeltaBatch(messages=[message], polled_at=_ts(5)))

    transport.before_send_returns = deliver_by_poll

    async def scenario() -> Message:
        result = await engine.send_message(TEAM, "hello")
        await engine.join()
        return result

    message = asyncio.run(scenario())

    assert _ids(engine.snapshot()) == [message.id]
    assert engine.snapshot()[0].pending is False
    assert transport.read_calls == []


def test_rejected_send_rolls_back_placeholder(settings):
    transport = _FakeTransport()
    transport.send_error = RejectedMutation(status_code=403, code="forbidden", message="Not a member")
    engine = _engine(settings, transport)
    snapshots = []
    engine.subscribe(snapshots.append, replay=False)

    with pytest.raises(RejectedMutation):
        asyncio.run(engine.send_message(TEAM, "hello"))

    assert engine.snapshot() == ()
    assert len(snapshots[0]) == 1
    assert snapshots[-1] == ()
    outbound = engine.outbound(transport.sent[0].client_message_id)
    assert outbound.state == Rejected(reason="Not a member")


def test_invalid_content_is_rejected_before_sending(settings):
    transport = _FakeTransport()
    engine = _engine(settings, transport)

    with pytest.raises(RejectedMutation) as exc_info:
        asyncio.run(engine.send_message(TEAM, "   "))
    assert exc_info.value.code == "invalid_content"

    with pytest.raises(RejectedMutation):
        asyncio.run(engine.send_message(TEAM, "x" * (settings.message_max_length + 1)))

    assert transport.sent == []
    assert engine.snapshot() == ()


def test_edit_message_applies_server_copy(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, sender_id="u1")]
    engine = _engine(settings, transport)

    async def scenario() -> Message:
        await engine.load_scope(TEAM)
        return await engine.edit_message("m1", "edited")

    updated = asyncio.run(scenario())

    assert updated.content == "edited"
    assert engine.message("m1").content == "edited"
    assert transport.edits == [("m1", "edited")]


def test_rejected_edit_restores_previous_content(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1)]
    transport.mutation_error = RejectedMutation(status_code=403, code="forbidden", message="Only the sender can edit")
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.load_scope(TEAM)
        await engine.join()
        await engine.edit_message("m1", "edited")

    with pytest.raises(RejectedMutation):
        asyncio.run(scenario())

    assert engine.message("m1").content == "content m1"


def test_delete_message_removes_and_rolls_back_on_failure(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, sender_id="u1"), _message("m2", 2, sender_id="u1")]
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.load_scope(TEAM)
        await engine.delete_message("m1")
        transport.mutation_error = TransportError(status_code=503, message="Service unavailable")
        await engine.delete_message("m2")

    with pytest.raises(TransportError):
        asyncio.run(scenario())

    assert _ids(engine.snapshot()) == ["m2"]
    assert transport.deleted == ["m1", "m2"]


def test_mutations_on_unknown_messages_are_rejected(settings):
    engine = _engine(settings, _FakeTransport())

    with pytest.raises(RejectedMutation):
        asyncio.run(engine.edit_message("missing", "edited"))
    with pytest.raises(RejectedMutation):
        asyncio.run(engine.delete_message("missing"))


def test_expanded_thread_refreshes_when_reply_count_grows(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, reply_count=1, read_at=_ts(1))]
    transport.replies["m1"] = [_reply("r1", 2)]
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.load_scope(TEAM)
        replies = await engine.expand_thread("m1")
        assert _ids(replies) == ["r1"]
        transport.replies["m1"].append(_reply("r2", 3))
        transport.poll_results.append(
            DeltaBatch(messages=[_message("m1", 1, reply_count=2, read_at=_ts(1))], polled_at=_ts(5))
        )
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    state = engine.thread("m1")
    assert state is not None
    assert state.expanded is True
    assert _ids(state.replies) == ["r1", "r2"]
    assert state.last_known_reply_count == 2
    assert engine.message("m1").reply_count == 2


def test_collapsed_thread_is_not_refreshed(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, reply_count=1, read_at=_ts(1))]
    transport.replies["m1"] = [_reply("r1", 2)]
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.load_scope(TEAM)
        await engine.expand_thread("m1")
        engine.collapse_thread("m1")
        transport.replies["m1"].append(_reply("r2", 3))
        transport.poll_results.append(
            DeltaBatch(messages=[_message("m1", 1, reply_count=2, read_at=_ts(1))], polled_at=_ts(5))
        )
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    state = engine.thread("m1")
    assert state.expanded is False
    assert _ids(state.replies) == ["r1"]


def test_send_reply_appends_and_raises_reply_count(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, read_at=_ts(1))]
    engine = _engine(settings, transport)

    async def scenario() -> Reply:
        await engine.load_scope(TEAM)
        await engine.expand_thread("m1")
        return await engine.send_reply("m1", "thanks")

    reply = asyncio.run(scenario())

    assert reply.parent_id == "m1"
    state = engine.thread("m1")
    assert _ids(state.replies) == [reply.id]
    assert state.replies[0].pending is False
    assert engine.message("m1").reply_count == 1


def test_rejected_reply_removes_placeholder(settings):
    transport = _FakeTransport()
    transport.mutation_error = RejectedMutation(status_code=404, code="message_not_found", message="Message not found")
    engine = _engine(settings, transport)

    with pytest.raises(RejectedMutation):
        asyncio.run(engine.send_reply("m1", "thanks"))

    assert engine.thread("m1").replies == []


def test_subscribe_replays_current_snapshot(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, read_at=_ts(1))]
    engine = _engine(settings, transport)
    asyncio.run(engine.load_scope(TEAM))
    received = []

    unsubscribe = engine.subscribe(received.append)
    unsubscribe()
    engine.publish()

    assert len(received) == 1
    assert _ids(received[0]) == ["m1"]


def test_manual_mark_read_updates_local_flag(settings):
    transport = _FakeTransport()
    engine = _engine(settings, transport)

    async def scenario() -> None:
        engine.apply_batch(DeltaBatch(messages=[_message("m1", 1)], polled_at=_ts(5)))
        await engine.mark_read("m1")
        await engine.join()

    asyncio.run(scenario())

    assert "m1" in transport.read_calls
    assert engine.message("m1").read_by_local_user is True
    assert engine.unread_count() == 0


def test_resync_resets_watermark_and_reloads_history(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, read_at=_ts(1))]
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.resync()

    before = datetime.now(UTC)
    asyncio.run(scenario())

    assert engine.watermark.get() >= before
    assert _ids(engine.snapshot()) == ["m1"]


def test_start_and_stop_session(settings):
    transport = _FakeTransport()
    transport.history["t1"] = [_message("m1", 1, read_at=_ts(1))]
    transport.history["t2"] = [_message("m2", 2, scope_id="t2", read_at=_ts(2))]
    engine = _engine(settings, transport)

    async def scenario() -> None:
        await engine.start(SyncScopes(team_ids=["t1"]))
        assert engine.scheduler.running is True
        await engine.set_scopes(["t1", "t2"], [])
        await engine.join()
        await engine.stop()

    asyncio.run(scenario())

    assert _ids(engine.snapshot()) == ["m1", "m2"]
    assert transport.poll_calls[0][1] == SyncScopes(team_ids=["t1", "t2"])
    assert engine.scheduler.state is SchedulerState.stopped
    assert engine.scheduler.running is False


def test_failed_reconciliation_skips_notifications_for_unmerged_messages(settings, monkeypatch):
    transport = _FakeTransport()
    transport.poll_results.append(DeltaBatch(messages=[_message("m1", 1)], polled_at=_ts(5)))
    notifier = _FakeNotifier()
    engine = _engine(settings, transport, notifier)

    def broken_merge(local, delta):
        raise RuntimeError("merge failure")

    monkeypatch.setattr(engine._reconciler, "merge", broken_merge)

    async def scenario() -> None:
        await engine.set_scopes(["t1"], [])
        await engine.poll_now()
        await engine.join()

    asyncio.run(scenario())

    assert engine.snapshot() == ()
    assert notifier.notifications == []
    assert engine.notified_ids == frozenset()
    assert transport.read_calls == []
    assert engine.watermark.get() == _ts(5)
