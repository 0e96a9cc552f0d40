from __future__ import annotations

import logging

import httpx

from msgsync.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def base_url_for(settings: Settings) -> str:
    return f"{settings.api_base_url.rstrip('/')}{settings.api_prefix}/"


def create_http_client(
    settings: Settings | None = None,
    *,
    auth: httpx.Auth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    settings = settings or get_settings()
    base_url = base_url_for(settings)
    logger.info("Configuring HTTP client")
    logger.debug("HTTP client base_url=%s timeout_sec=%s", base_url, settings.request_timeout_sec)
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(settings.request_timeout_sec),
        headers={"Content-Type": "application/json"},
        auth=auth,
        transport=transport,
    )
