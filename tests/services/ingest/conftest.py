"""Fixtures for ingest service tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from killfeed.core import retry as retry_module
from killfeed.core.config import KillfeedSettings
from killfeed.services.ingest import IngestRuntime


@pytest.fixture
def settings(tmp_path: Path, upstream) -> KillfeedSettings:
    """Settings pointed at the fake upstream, with no pacing or backoff waits."""
    return KillfeedSettings(
        instance_root=tmp_path / "instance",
        db_path=tmp_path / "ingest.db",
        zkill_base_url=upstream.zkill_base_url,
        esi_base_url=upstream.esi_base_url,
        redisq_base_url=upstream.redisq_base_url,
        zkill_min_delay_seconds=0,
        esi_min_delay_seconds=0,
        redisq_min_delay_seconds=0,
        redisq_error_backoff_seconds=0,
        initial_retry_delay_seconds=0,
        retry_jitter_seconds=0,
    )


@pytest.fixture
def make_runtime(settings: KillfeedSettings, upstream) -> Callable[..., IngestRuntime]:
    """Build an IngestRuntime over the fake upstream; keyword arguments override settings."""

    def factory(**overrides) -> IngestRuntime:
        configured = settings.model_copy(update=overrides) if overrides else settings
        return IngestRuntime.from_settings(
            configured, transport=httpx.MockTransport(upstream.handler)
        )

    return factory


@pytest_asyncio.fixture
async def runtime(make_runtime) -> AsyncGenerator[IngestRuntime, None]:
    async with make_runtime() as runtime:
        yield runtime


@pytest.fixture
def backoff_delays(monkeypatch) -> list[float]:
    """Record retry backoff delays instead of sleeping."""
    delays: list[float] = []

    async def record(seconds, token=None):
        delays.append(seconds)

    monkeypatch.setattr(retry_module, "cancellable_sleep", record)
    return delays
