"""
Admin authentication for entitlement operations.

Supports hybrid authentication:
- Clerk JWT (preferred): Bearer token with role validation
- Legacy X-Admin-Key: Shared secret (deprecated, feature-flagged)

Auth modes (ADMIN_AUTH_MODE):
- "clerk": Only Clerk JWT allowed (production default)
- "legacy": Only X-Admin-Key allowed (testing/migration)
- "hybrid": Both allowed (default for rollout)

In production (ENV=production), legacy keys are blocked unless the mode is
explicitly "legacy". Every admin write is audited with the actor identity.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Optional

import jwt
from fastapi import Request

from auditor.core.clerk_auth import is_admin_user, verify_jwt_token
from auditor.core.config import settings
from auditor.core.errors import AppError, AuthError


logger = logging.getLogger(__name__)


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["clerk", "legacy_key"]
    actor_id: str  # Clerk user ID or "legacy:<hash>"
    actor_email: Optional[str] = None
    actor_display: Optional[str] = None


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """
    Verify legacy X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="legacy_key",
        actor_id=f"legacy:{key_hash}",
        actor_display="Legacy Admin Key",
    )


def verify_clerk_jwt(request: Request) -> Optional[AdminActor]:
    """
    Verify Clerk JWT from Authorization header.
    Returns AdminActor if valid and the claims carry the admin role.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:].strip()
    if not token:
        return None

    try:
        claims = verify_jwt_token(token)
    except jwt.PyJWTError:
        return None

    if not is_admin_user(claims):
        return None

    return AdminActor(
        actor_type="clerk",
        actor_id=claims.get("sub", "unknown"),
        actor_email=claims.get("email"),
        actor_display=claims.get("name") or claims.get("email"),
    )


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """
    Attempt to authenticate admin from request.
    Returns AdminActor or None (does not raise).

    Order of preference:
    1. Clerk JWT (if ADMIN_AUTH_MODE in {"clerk", "hybrid"})
    2. Legacy key (if ADMIN_AUTH_MODE in {"legacy", "hybrid"} AND env allows)
    """
    mode = settings.ADMIN_AUTH_MODE.lower()
    env = settings.ENV.lower()

    if mode in {"clerk", "hybrid"}:
        actor = verify_clerk_jwt(request)
        if actor:
            return actor

    if mode in {"legacy", "hybrid"}:
        if env == "production" and mode != "legacy":
            return None
        return verify_legacy_key(request)

    return None


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    has_clerk = bool(settings.CLERK_SECRET_KEY or settings.CLERK_JWKS_URL or settings.CLERK_ISSUER)
    has_legacy = bool(settings.ADMIN_KEY)
    if not has_clerk and not has_legacy:
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
            extra={"hint": "Set ADMIN_KEY (legacy) or CLERK_SECRET_KEY (recommended)"},
        )

    logger.warning(
        "[admin] rejected credentials",
        extra={"error_code": "admin_unauthorized", "path": request.url.path},
    )
    raise AuthError(
        "Unauthorized: invalid or missing admin credentials",
        code="admin_unauthorized",
        extra={"hint": f"Mode: {settings.ADMIN_AUTH_MODE.lower()}. Use Clerk Bearer token or X-Admin-Key header."},
    )
