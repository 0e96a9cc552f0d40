from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Protocol

from msgsync.core.errors import RegressionError, SyncError
from msgsync.schemas.sync import DeltaBatch, SyncScopes
from msgsync.sync.fetcher import DeltaFetcher
from msgsync.sync.watermark import WatermarkStore

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    idle = "idle"
    polling = "polling"
    backoff = "backoff"
    stopped = "stopped"


class BatchSink(Protocol):
    def apply_batch(self, batch: DeltaBatch) -> None: ...

    def publish(self) -> None: ...


class PollScheduler:
    def __init__(
        self,
        *,
        fetcher: DeltaFetcher,
        watermark: WatermarkStore,
        sink: BatchSink,
        poll_interval_sec: float,
        max_interval_sec: float | None = None,
        scopes: SyncScopes | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._watermark = watermark
        self._sink = sink
        self._poll_interval_sec = poll_interval_sec
        self._max_interval_sec = max(poll_interval_sec, max_interval_sec or poll_interval_sec)
        self._scopes = scopes or SyncScopes()
        self._state = SchedulerState.idle
        self._failures = 0
        self._resync_requested = False
        self._generation = 0
        self._timer_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def scopes(self) -> SyncScopes:
        return self._scopes

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def running(self) -> bool:
        return self._timer_task is not None

    def current_interval(self) -> float:
        if self._failures <= 1:
            return self._poll_interval_sec
        return min(self._max_interval_sec, self._poll_interval_sec * (2 ** (self._failures - 1)))

    async def start(self) -> None:
        if self._timer_task is not None:
            return
        if self._state is SchedulerState.stopped:
            self._state = SchedulerState.idle
        self._timer_task = asyncio.create_task(self._run())
        logger.info("Poll scheduler started interval_sec=%.2f", self._poll_interval_sec)

    async def stop(self) -> None:
        self._state = SchedulerState.stopped
        self._generation += 1
        self._resync_requested = False
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        try:
            await self._timer_task
        except asyncio.CancelledError:
            pass
        self._timer_task = None
        logger.info("Poll scheduler stopped")

    async def _run(self) -> None:
        try:
            while self._state is not SchedulerState.stopped:
                await asyncio.sleep(self.current_interval())
                self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Poll timer crashed")
            raise

    def poll_in_flight(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def tick(self) -> bool:
        if self._state is SchedulerState.stopped:
            return False
        if self.poll_in_flight():
            logger.debug("Poll tick dropped; a poll is already in flight")
            return False
        self._state = SchedulerState.polling
        self._poll_task = asyncio.create_task(self._poll_cycle(self._generation))
        self._poll_task.add_done_callback(self._after_poll)
        return True

    async def poll_now(self) -> bool:
        started = self.tick()
        await self.join()
        return started

    async def join(self) -> None:
        while self.poll_in_flight():
            await self._poll_task

    def set_scopes(self, scopes: SyncScopes, *, poll: bool = True) -> bool:
        if scopes == self._scopes:
            return False
        logger.info(
            "Sync scopes changed teams=%s orgs=%s",
            len(scopes.team_ids),
            len(scopes.org_ids),
        )
        self._scopes = scopes
        if not poll or self._state is SchedulerState.stopped:
            return True
        if self.poll_in_flight():
            self._resync_requested = True
        else:
            self.tick()
        return True

    async def _poll_cycle(self, generation: int) -> None:
        watermark = self._watermark.get()
        failure: Exception | None = None
        try:
            batch = await self._fetcher.fetch(watermark, self._scopes)
        except SyncError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected poll failure")
            failure = exc

        if generation != self._generation:
            logger.info("Discarding poll outcome from a stopped session failed=%s", failure is not None)
            return
        if failure is not None:
            self._record_failure(failure)
        else:
            self._apply(batch)

    def _after_poll(self, task: asyncio.Task[None]) -> None:
        if not self._resync_requested or self._state is SchedulerState.stopped:
            return
        self._resync_requested = False
        logger.debug("Running follow-up poll for changed scopes")
        self.tick()

    def _apply(self, batch: DeltaBatch) -> None:
        try:
            self._sink.apply_batch(batch)
        except Exception:
            logger.exception("Delta pipeline failed")

        try:
            self._watermark.set(batch.polled_at)
        except RegressionError as exc:
            logger.error("Poll response moved watermark backward details=%s", exc.details)

        try:
            self._sink.publish()
        except Exception:
            logger.exception("Snapshot publish failed")

        self._failures = 0
        self._state = SchedulerState.idle
        logger.debug(
            "Poll completed messages=%s watermark=%s",
            len(batch.messages),
            self._watermark.get().isoformat(),
        )

    def _record_failure(self, exc: Exception) -> None:
        self._failures += 1
        self._state = SchedulerState.backoff
        logger.warning(
            "Poll failed attempts=%s next_interval_sec=%.2f error=%s",
            self._failures,
            self.current_interval(),
            exc,
        )
