"""
Killfeed - Resumable Killmail Ingestion

Ingests killmails for tracked EVE Online characters from zKillboard's
paginated feeds, its RedisQ live stream and ESI's authoritative killmail
endpoint, and persists them so that network flakiness, partial failures and
restarts lose nothing.

Usage as library:
    from killfeed.core import get_settings
    from killfeed.services.ingest import IngestRuntime

    async with IngestRuntime.from_settings(get_settings()) as runtime:
        await runtime.store.add_tracked_entity(90000001, "Some Pilot")
        summaries = await runtime.driver.backfill_entity(90000001)

Usage as CLI:
    python -m killfeed track add 90000001
    python -m killfeed backfill 90000001 --max-age-days 7
    python -m killfeed listen
    python -m killfeed status

Package structure:
    killfeed/
    ├── core/           # Shared infrastructure
    │   ├── config.py   # Pydantic settings
    │   ├── logging.py  # Structured logging
    │   ├── retry.py    # Backoff executor and error taxonomy
    │   ├── rate_limit.py / circuit_breaker.py / cancellation.py
    │   └── async_client.py # Resilient httpx client
    ├── services/
    │   ├── killmail_store/ # Storage protocol + SQLite implementation
    │   └── ingest/     # Clients, pipeline, sync, checkpoints, backfill, listener
    └── commands/       # CLI command implementations
"""

__version__ = "1.0.0"
