"""
qbolink authentication and token management.

Provides the OAuth2 token endpoint client, durable token stores with
atomic replacement, and the lifecycle manager that keeps one usable
QuickBooks credential per owner.
"""

from qbolink.auth.lifecycle import RefreshResult, TokenLifecycleManager
from qbolink.auth.oauth2 import OAuthTokenClient, generate_pkce_pair, generate_state
from qbolink.auth.sql_store import SQLTokenStore
from qbolink.auth.store import FileTokenStore, MemoryTokenStore, TokenStore

__all__ = [
    "FileTokenStore",
    "MemoryTokenStore",
    "OAuthTokenClient",
    "RefreshResult",
    "SQLTokenStore",
    "TokenLifecycleManager",
    "TokenStore",
    "generate_pkce_pair",
    "generate_state",
]
