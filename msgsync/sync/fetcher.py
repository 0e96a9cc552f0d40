from __future__ import annotations

from datetime import datetime
import logging
from typing import Protocol

from msgsync.schemas.sync import DeltaBatch, SyncScopes

logger = logging.getLogger(__name__)


class PollTransport(Protocol):
    async def poll_messages(self, *, since: datetime, scopes: SyncScopes) -> DeltaBatch: ...


class DeltaFetcher:
    def __init__(self, transport: PollTransport) -> None:
        self._transport = transport

    async def fetch(self, watermark: datetime, scopes: SyncScopes) -> DeltaBatch:
        if scopes.is_empty():
            logger.debug("No scopes to poll; returning empty batch")
            return DeltaBatch(messages=[], polled_at=watermark)

        logger.debug(
            "Polling messages since=%s teams=%s orgs=%s",
            watermark.isoformat(),
            len(scopes.team_ids),
            len(scopes.org_ids),
        )
        batch = await self._transport.poll_messages(since=watermark, scopes=scopes)
        logger.debug("Poll returned messages=%s polled_at=%s", len(batch.messages), batch.polled_at.isoformat())
        return batch
