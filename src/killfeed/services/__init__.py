"""
Killfeed services.

- killmail_store: Durable storage for killmails, tracked entities and cursors
- ingest: Single-killmail ingestion and resumable backfill
"""
