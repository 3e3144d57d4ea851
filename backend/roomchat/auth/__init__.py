"""Bearer-token authentication for HTTP and WebSocket callers."""
from .dependencies import Caller, authenticate, get_current_user, get_session, get_store
from .tokens import TokenClaims, create_access_token, decode_access_token

__all__ = [
    "Caller",
    "TokenClaims",
    "authenticate",
    "create_access_token",
    "decode_access_token",
    "get_current_user",
    "get_session",
    "get_store",
]
