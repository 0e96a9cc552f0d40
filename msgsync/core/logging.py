from __future__ import annotations

import logging


def configure_logging(*, debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        force=True,
    )

    logging.getLogger("msgsync").setLevel(level)
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.INFO if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("Logging configured")
    logger.info("Debug mode is %s", "enabled" if debug else "disabled")
