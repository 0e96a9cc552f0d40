from __future__ import annotations

import pytest

from msgsync.core.settings import Settings


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_base_url="http://test",
        poll_interval_ms=100,
        poll_max_interval_ms=800,
        thread_cache_max_entries=50,
    )
