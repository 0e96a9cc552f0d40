from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

import httpx

from msgsync.core.logging import configure_logging
from msgsync.core.settings import Settings, get_settings
from msgsync.schemas.sync import SyncScopes
from msgsync.services.message_service import MessageTransport
from msgsync.sync import MessageSyncEngine
from msgsync.sync.notifications import Notifier
from msgsync.transport.session import create_http_client

logger = logging.getLogger(__name__)


def create_engine(
    client: httpx.AsyncClient,
    *,
    local_user_id: str,
    notifier: Notifier | None = None,
    settings: Settings | None = None,
) -> MessageSyncEngine:
    settings = settings or get_settings()
    logger.debug("Creating sync engine user_id=%s", local_user_id)
    return MessageSyncEngine(
        transport=MessageTransport(client),
        local_user_id=local_user_id,
        notifier=notifier,
        settings=settings,
    )


@asynccontextmanager
async def sync_session(
    *,
    local_user_id: str,
    scopes: SyncScopes | None = None,
    auth: httpx.Auth | None = None,
    notifier: Notifier | None = None,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    configure_logs: bool = False,
) -> AsyncIterator[MessageSyncEngine]:
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(debug=settings.debug)

    logger.info("Sync session startup started user_id=%s", local_user_id)
    async with create_http_client(settings, auth=auth, transport=transport) as client:
        engine = create_engine(client, local_user_id=local_user_id, notifier=notifier, settings=settings)
        await engine.start(scopes)
        logger.info("Sync session startup completed user_id=%s", local_user_id)
        try:
            yield engine
        finally:
            await engine.stop()
            logger.info("Sync session shutdown completed user_id=%s", local_user_id)
