"""Bearer session token verification."""

import logging
from typing import Optional

import jwt

from proaccess.config.settings import get_config
from proaccess.db.models import Table
from proaccess.db.pool import get_pool
from proaccess.payments.entitlements import parse_user_id
from proaccess.payments.errors import (
    AuthenticationError,
    ConfigurationError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def authenticate(authorization: Optional[str]) -> str:
    """Resolve an ``Authorization`` header to the acting user's id.

    Session tokens are HS256 JWTs issued by the auth provider; the ``sub``
    claim holds the profile id.

    Raises:
        AuthenticationError: Header missing/malformed, token invalid or expired
        ConfigurationError: No verification secret configured
    """
    if not authorization:
        raise AuthenticationError("No authorization header provided")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")

    config = get_config()
    secret = config.auth_jwt_secret.get_secret_value()
    if not secret:
        logger.error("auth_jwt_secret not configured")
        raise ConfigurationError()

    try:
        claims = jwt.decode(
            token.strip(),
            secret,
            algorithms=[ALGORITHM],
            audience=config.auth_jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired, please sign in again")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected session token: {e}")
        raise AuthenticationError()

    user_id = parse_user_id(claims.get("sub"))
    if user_id is None:
        raise AuthenticationError("No authenticated user found")
    return user_id


async def require_admin(user_id: str) -> None:
    """Raise PermissionDeniedError unless the profile carries ``is_admin``."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        is_admin = await conn.fetchval(
            f"SELECT is_admin FROM {Table.PROFILES} WHERE id = $1",
            user_id,
        )

    if not is_admin:
        logger.warning(f"Non-admin user {user_id} attempted an admin operation")
        raise PermissionDeniedError()
