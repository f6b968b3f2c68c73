"""
Auth utilities for the Auditor API.

Validates identity-provider JWTs and exposes the caller's identity to routes.
There is no unverified-decode path and no header-based user id fallback.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Request
from starlette.concurrency import run_in_threadpool

from auditor.core.clerk_auth import verify_jwt_token
from auditor.core.errors import AuthError
from auditor.core.logging import bind_user_id


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Malformed Authorization header")
    return token.strip()


def verify_bearer(token: str) -> Identity:
    """
    Verify a bearer JWT and extract the identity.

    Raises:
        AuthError 401: invalid, expired or subject-less token
        IdentityProviderUnavailable 503: JWKS unreachable
    """
    try:
        claims = verify_jwt_token(token)
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.PyJWTError as e:
        logger.info("[auth] invalid token", extra={"error_code": "unauthorized", "reason": type(e).__name__})
        raise AuthError("Invalid token") from e

    user_id = claims.get("sub")
    if not user_id:
        raise AuthError("Token has no subject")
    return Identity(user_id=str(user_id), email=claims.get("email"))


async def get_current_identity(request: Request) -> Identity:
    """FastAPI dependency: bearer JWT required."""
    token = _bearer_token(request)
    if token is None:
        raise AuthError("Missing Authorization (Bearer JWT)")
    identity = await run_in_threadpool(verify_bearer, token)
    request.state.user_id = identity.user_id
    bind_user_id(identity.user_id)
    return identity


async def get_optional_identity(request: Request) -> Optional[Identity]:
    """FastAPI dependency: anonymous allowed, but a bad token is still 401."""
    token = _bearer_token(request)
    if token is None:
        return None
    identity = await run_in_threadpool(verify_bearer, token)
    request.state.user_id = identity.user_id
    bind_user_id(identity.user_id)
    return identity
