"""Sync engine: deduplication, the fetch-parse-store pipeline and the orchestrator."""
