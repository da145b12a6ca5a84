"""Stateless session identifiers derived from verified identity claims."""

import base64
import hashlib
import hmac

from access import AuthContext, VerifiedClaims
from errors import ConfigurationError, SessionMismatchError


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def session_material(claims: VerifiedClaims) -> str:
    # Expiry is deliberately excluded: one login grant maps to one session.
    return f"{claims.sub}|{claims.identity_nonce or ''}|{claims.primary_audience}"


def derive_session_id(claims: VerifiedClaims, secret: str) -> str:
    if not secret:
        raise ConfigurationError("Session secret is not configured.")
    digest = hmac.new(
        secret.encode("utf-8"),
        session_material(claims).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return _b64url(digest)


def require_matching_session(claimed: str, auth: AuthContext, secret: str) -> str:
    """Return the derived session id, or raise if the client claims another."""
    expected = derive_session_id(auth.claims, secret)
    if not hmac.compare_digest(claimed.encode("utf-8"), expected.encode("utf-8")):
        raise SessionMismatchError("Session mismatch.")
    return expected
