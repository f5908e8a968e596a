"""Principal accounts and the OAuth credentials the sync engine drives."""

from accountsync.accounts.models import OAuthToken, Principal, Provider, SourceType

__all__ = ["OAuthToken", "Principal", "Provider", "SourceType"]
