"""Durable job queue, concurrency guard, sync job handlers and the worker."""
