"""Resumable incremental sync engine for mailbox and CRM accounts."""

__version__ = "0.4.0"
