"""FastAPI dependencies resolving the caller from a bearer token."""
import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from roomchat.db.session import UserSession
from roomchat.db.store import ChatStore
from roomchat.errors import AuthenticationFailed
from roomchat.realtime.hub import get_hub

from .tokens import decode_access_token

logger = logging.getLogger(__name__)


class Caller(BaseModel):
    """The authenticated user making a request."""
    id: str
    email: str


def get_store() -> ChatStore:
    return ChatStore.get_instance()


def authenticate(token: Optional[str]) -> Caller:
    """Verify ``token`` and provision its user on first sight."""
    claims = decode_access_token(token or "")
    user = get_store().ensure_user(claims.sub, claims.email)
    return Caller(id=user["id"], email=user["email"])


async def get_current_user(authorization: Optional[str] = Header(None)) -> Caller:
    if not authorization:
        raise AuthenticationFailed("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationFailed("Invalid authorization format")
    caller = authenticate(token.strip())
    # provisioning a new user publishes its profile
    await get_hub().flush()
    return caller


async def get_session(caller: Caller = Depends(get_current_user)) -> AsyncIterator[UserSession]:
    """Row-level-secured store access for the request's caller.

    Changes committed while handling the request are pushed to realtime
    subscribers once the handler is done.
    """
    session = get_store().session(caller.id)
    try:
        yield session
    finally:
        await get_hub().flush()
