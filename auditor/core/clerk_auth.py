"""
Clerk JWT verification.

Handles:
- RS256 verification against JWKS whenever CLERK_ISSUER or CLERK_JWKS_URL is set,
  fetched with a bounded timeout
- HS256 verification with CLERK_SECRET_KEY only when no JWKS source is set
  (development/testing)
- Issuer/audience validation
- Role extraction for admin access
- Test helpers for deterministic testing (no network)

Testing:
- Use create_test_jwt() to create test tokens
- Override JWKS fetch with set_jwks_provider_for_tests()
"""
import json
import logging
import time
from typing import Dict, Any, Optional, Callable

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from auditor.core.config import settings
from auditor.core.errors import IdentityProviderUnavailable


logger = logging.getLogger(__name__)

# JWKS override (tests) and cache keyed by issuer/jwks_url
_jwks_provider_override: Optional[Callable[[str, str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, Dict[str, Any]] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str, str], Dict[str, Any]]]) -> None:
    """Set or clear JWKS provider override for deterministic testing (no network)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _default_fetch_jwks(issuer: str, jwks_url: str) -> Dict[str, Any]:
    try:
        response = httpx.get(jwks_url, timeout=settings.IDENTITY_TIMEOUT_SECONDS)
        response.raise_for_status()
        return response.json()
    except (httpx.TimeoutException, httpx.TransportError) as e:
        logger.error("[clerk] JWKS fetch failed", extra={"error_code": "identity_unavailable", "error": type(e).__name__})
        raise IdentityProviderUnavailable("Identity provider unavailable") from e
    except httpx.HTTPStatusError as e:
        logger.error("[clerk] JWKS fetch returned error", extra={"error_code": "identity_unavailable", "status": e.response.status_code})
        raise IdentityProviderUnavailable("Identity provider unavailable") from e


def _jwks_location(issuer: Optional[str], jwks_url: Optional[str]) -> tuple:
    resolved_issuer = issuer or "https://clerk.test"
    resolved_url = jwks_url or f"{resolved_issuer.rstrip('/')}/.well-known/jwks.json"
    return resolved_issuer, resolved_url


def get_jwks(issuer: str, jwks_url: Optional[str] = None, refresh: bool = False) -> Dict[str, Any]:
    """Fetch JWKS using override (tests) or default fetcher. Cached per issuer/url."""
    resolved_issuer, resolved_url = _jwks_location(issuer, jwks_url)
    cache_key = f"{resolved_issuer}|{resolved_url}"

    if not refresh and cache_key in _jwks_cache:
        return _jwks_cache[cache_key]

    if _jwks_provider_override:
        jwks = _jwks_provider_override(resolved_issuer, resolved_url)
    else:
        jwks = _default_fetch_jwks(resolved_issuer, resolved_url)

    _jwks_cache[cache_key] = jwks
    return jwks


def _find_key(jwks: Dict[str, Any], kid: str) -> Optional[Dict[str, Any]]:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify Clerk JWT and return claims.

    Raises jwt.PyJWTError on invalid token and IdentityProviderUnavailable
    when the JWKS cannot be fetched.

    Args:
        token: Raw JWT string (without "Bearer " prefix)

    Returns:
        Decoded claims dict with keys: sub, email, public_metadata, etc.
    """
    issuer = settings.CLERK_ISSUER
    jwks_url = settings.CLERK_JWKS_URL
    secret = settings.CLERK_SECRET_KEY
    if not issuer and not jwks_url:
        if not secret:
            raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")
        # Symmetric verification (HS256) only when no JWKS source is configured
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False, "require": ["exp", "sub"]},
        )

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = _find_key(get_jwks(issuer, jwks_url), kid)
    if matching_key is None:
        # Key rotation: refetch once before rejecting
        matching_key = _find_key(get_jwks(issuer, jwks_url, refresh=True), kid)
    if matching_key is None:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=issuer,
        options={
            "verify_signature": True,
            "verify_exp": True,
            "verify_aud": bool(settings.CLERK_AUDIENCE),
            "verify_iss": bool(issuer),
            "require": ["exp", "sub"],
        },
    )


def is_admin_user(claims: Dict[str, Any]) -> bool:
    """
    Check if JWT claims represent an admin user.

    public_metadata.role == "admin", or org_role == "admin" for organizations.
    """
    public_metadata = claims.get("public_metadata", {})
    if isinstance(public_metadata, dict) and public_metadata.get("role") == "admin":
        return True
    return claims.get("org_role") == "admin"


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    sub: str = "test_user_123",
    email: Optional[str] = "test@example.com",
    role: Optional[str] = None,
    exp_minutes: int = 60,
    secret: str = "test-secret-key-for-auditor",
    algorithm: str = "HS256",
    private_key: Optional[str] = None,
    kid: Optional[str] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """
    Create a test JWT for unit testing.
    Supports HS256 (default) and RS256 (for JWKS-based tests).

    Args:
        sub: User ID (subject)
        email: User email
        role: Role to set in public_metadata (e.g. "admin")
        exp_minutes: Expiration time in minutes from now (negative = expired)
        secret: Secret key for signing (HS256)
        algorithm: Signing algorithm ("HS256" or "RS256")
        private_key: PEM-encoded private key for RS256
        kid: Optional key ID for RS256 header

    Returns:
        Signed JWT string
    """
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "iss": issuer or settings.CLERK_ISSUER or "https://test.clerk.accounts.dev",
        "aud": audience or settings.CLERK_AUDIENCE or "test-audience",
        "public_metadata": {},
    }

    if role:
        payload["public_metadata"]["role"] = role

    headers = {"kid": kid} if kid else None
    key = private_key if algorithm == "RS256" and private_key else secret
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)
