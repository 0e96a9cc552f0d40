from msgsync.sync.engine import MessageSyncEngine
from msgsync.sync.fetcher import DeltaFetcher
from msgsync.sync.notifications import NotificationDecider
from msgsync.sync.publisher import SnapshotPublisher
from msgsync.sync.read_state import ReadStateTracker
from msgsync.sync.reconciliation import ReconciliationEngine
from msgsync.sync.scheduler import PollScheduler, SchedulerState
from msgsync.sync.threads import ThreadCache, ThreadState
from msgsync.sync.watermark import WatermarkStore

__all__ = [
    "DeltaFetcher",
    "MessageSyncEngine",
    "NotificationDecider",
    "PollScheduler",
    "ReadStateTracker",
    "ReconciliationEngine",
    "SchedulerState",
    "SnapshotPublisher",
    "ThreadCache",
    "ThreadState",
    "WatermarkStore",
]
