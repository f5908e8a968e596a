"""OAuth refresh and token lifecycle."""

from accountsync.connectors.auth.oauth2 import OAuth2Manager, get_oauth_manager
from accountsync.connectors.auth.token_manager import (
    RefreshPolicy,
    TokenCheckResult,
    TokenLifecycleManager,
    TokenState,
    needs_refresh,
    next_check_delay,
)

__all__ = [
    "OAuth2Manager",
    "get_oauth_manager",
    "RefreshPolicy",
    "TokenCheckResult",
    "TokenLifecycleManager",
    "TokenState",
    "needs_refresh",
    "next_check_delay",
]
