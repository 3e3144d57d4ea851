"""Access token verification.

Tokens are HS256 JWTs minted by the identity provider. The service only
verifies them; :func:`create_access_token` exists for local development and
tests.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel, ValidationError, field_validator

from roomchat.config import AppSettings, get_config
from roomchat.errors import AuthenticationFailed

logger = logging.getLogger(__name__)


class TokenClaims(BaseModel):
    sub: str
    email: str

    @field_validator("sub")
    @classmethod
    def _sub_is_uuid(cls, value: str) -> str:
        try:
            return str(uuid.UUID(value))
        except ValueError:
            raise ValueError("sub claim is not a user id") from None


def _signing_key(config: AppSettings) -> str:
    if not config.secrets.jwt.configured:
        logger.error("[auth] jwt.secret_key is not set; refusing to handle tokens")
        raise AuthenticationFailed("Token verification is not configured (missing jwt.secret_key)")
    return config.secrets.jwt.secret_key


def create_access_token(
    user_id: str,
    email: str,
    expires_minutes: Optional[int] = None,
    config: Optional[AppSettings] = None,
) -> str:
    config = config or get_config()
    secret_key = _signing_key(config)
    now = datetime.now(timezone.utc)
    minutes = config.auth.token_expire_minutes if expires_minutes is None else expires_minutes
    payload = {
        "sub": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
    }
    if config.auth.audience:
        payload["aud"] = config.auth.audience
    if config.auth.issuer:
        payload["iss"] = config.auth.issuer
    return jwt.encode(payload, secret_key, algorithm=config.secrets.jwt.algorithm)


def decode_access_token(token: str, config: Optional[AppSettings] = None) -> TokenClaims:
    """Verify ``token`` and return its claims.

    Raises:
        AuthenticationFailed: The token is missing, expired, badly signed,
            issued for another audience/issuer, lacks ``sub``/``email``, or no
            signing secret is configured.
    """
    if not token:
        raise AuthenticationFailed("Missing access token")
    config = config or get_config()
    secret_key = _signing_key(config)

    decode_kwargs = {
        "algorithms": [config.secrets.jwt.algorithm],
        "options": {"require": ["exp", "sub"]},
    }
    if config.auth.audience:
        decode_kwargs["audience"] = config.auth.audience
    if config.auth.issuer:
        decode_kwargs["issuer"] = config.auth.issuer

    try:
        payload = jwt.decode(token, secret_key, **decode_kwargs)
    except jwt.ExpiredSignatureError:
        logger.warning("[auth] Token has expired")
        raise AuthenticationFailed("Token has expired") from None
    except jwt.InvalidTokenError as e:
        logger.warning("[auth] Invalid token: %s", e)
        raise AuthenticationFailed(f"Invalid token: {e}") from None

    try:
        return TokenClaims(**payload)
    except ValidationError as e:
        logger.warning("[auth] Invalid token claims: %s", e.errors()[0].get("msg"))
        raise AuthenticationFailed("Invalid token: missing or malformed sub or email claim") from None
