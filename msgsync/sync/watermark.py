from __future__ import annotations

from datetime import UTC, datetime
import logging

from msgsync.core.errors import RegressionError
from msgsync.schemas.messages import ensure_aware

logger = logging.getLogger(__name__)


class WatermarkStore:
    def __init__(self, initial: datetime | None = None) -> None:
        self._value = ensure_aware(initial) or datetime.now(UTC)

    def get(self) -> datetime:
        return self._value

    def set(self, value: datetime) -> None:
        value = ensure_aware(value)
        if value < self._value:
            logger.error(
                "Watermark regression rejected current=%s attempted=%s",
                self._value.isoformat(),
                value.isoformat(),
            )
            raise RegressionError(current=self._value, attempted=value)
        self._value = value
        logger.debug("Watermark advanced value=%s", value.isoformat())

    def reset(self, value: datetime) -> None:
        value = ensure_aware(value)
        logger.info("Watermark reset from=%s to=%s", self._value.isoformat(), value.isoformat())
        self._value = value
