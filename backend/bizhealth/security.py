"""Security utilities for JWTs, OAuth state and provider token encryption.

WHAT:
    - Symmetric encryption for provider access/refresh tokens (Fernet).
    - JWT decoding for API callers.
    - Signed, expiring OAuth `state` tokens that carry the user id across
      the provider redirect.

WHY:
    - Provider credentials must never land in the database in plaintext.
    - The OAuth callback is an unauthenticated browser redirect; the only
      thing tying it to a user is `state`, so it must be tamper-proof and
      short-lived (10 minutes by default).

REFERENCES:
    - bizhealth/services/credential_store.py (encrypt/decrypt consumers)
    - bizhealth/services/oauth_service.py (state consumers)
"""

import base64
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError

from .exceptions import InvalidStateToken


ALGORITHM = "HS256"
STATE_AUDIENCE = "oauth-state"

logger = logging.getLogger(__name__)


def _settings():
    # Local import: deps imports this module for decode_token
    from .deps import get_settings

    return get_settings()


@lru_cache()
def _cipher_for(key: str) -> Fernet:
    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python backend/generate_keys.py"
        ) from exc


def _cipher() -> Fernet:
    key = _settings().TOKEN_ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key and export it "
            "or add it to backend/.env."
        )
    return _cipher_for(key)


def _jwt_secret() -> str:
    secret = _settings().JWT_SECRET
    if not secret:
        raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")
    return secret


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., a Stripe access token).
        context:   Friendly label for logs (provider/account).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


def create_access_token(subject: str, expires_minutes: int = 60) -> str:
    """Create a signed JWT for the given subject (a user id)."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, _jwt_secret(), algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, _jwt_secret(), algorithms=[ALGORITHM])


# =============================================================================
# OAUTH STATE
# =============================================================================

@dataclass(frozen=True)
class OAuthState:
    """Verified contents of an OAuth state token."""

    user_id: str
    provider_id: str
    issued_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)


def _state_secret() -> str:
    secret = _settings().state_secret
    if not secret:
        raise RuntimeError("OAUTH_STATE_SECRET (or JWT_SECRET) must be set to sign OAuth state.")
    return secret


def create_oauth_state(
    user_id: str,
    provider_id: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    """Sign a state token binding a pending authorization to a user and provider.

    `data` carries provider-specific values that must survive the redirect
    (e.g. the Shopify store domain the user typed in).
    """
    issued = now or datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else _settings().OAUTH_STATE_TTL_SECONDS
    claims: Dict[str, Any] = {
        "sub": user_id,
        "prv": provider_id,
        "aud": STATE_AUDIENCE,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl)).timestamp()),
        "nonce": secrets.token_urlsafe(12),
        "dat": data or {},
    }
    return jwt.encode(claims, _state_secret(), algorithm=ALGORITHM)


def verify_oauth_state(
    state: Optional[str],
    provider_id: str,
    *,
    now: Optional[datetime] = None,
    ttl_seconds: Optional[int] = None,
) -> OAuthState:
    """Verify authenticity and freshness of a state token.

    Raises:
        InvalidStateToken: missing, forged, expired, older than the TTL, or
            issued for a different provider.
    """
    if not state:
        raise InvalidStateToken("Missing state parameter", provider_id=provider_id)

    try:
        claims = jwt.decode(state, _state_secret(), algorithms=[ALGORITHM], audience=STATE_AUDIENCE)
    except JWTError as exc:
        logger.warning("[OAUTH_STATE] Rejected state for %s: %s", provider_id, exc)
        raise InvalidStateToken("Invalid or expired state", provider_id=provider_id) from exc

    if claims.get("prv") != provider_id:
        raise InvalidStateToken("State was issued for a different provider", provider_id=provider_id)

    user_id = claims.get("sub")
    issued_ts = claims.get("iat")
    if not user_id or issued_ts is None:
        raise InvalidStateToken("Incomplete state payload", provider_id=provider_id)

    # exp is enforced by jose; re-check age so a shortened TTL applies to old tokens too
    ttl = ttl_seconds if ttl_seconds is not None else _settings().OAUTH_STATE_TTL_SECONDS
    current = now or datetime.now(timezone.utc)
    issued_at = datetime.fromtimestamp(int(issued_ts), tz=timezone.utc)
    if current - issued_at > timedelta(seconds=ttl):
        raise InvalidStateToken("State token has expired", provider_id=provider_id)

    return OAuthState(
        user_id=str(user_id),
        provider_id=provider_id,
        issued_at=issued_at,
        data=dict(claims.get("dat") or {}),
    )
