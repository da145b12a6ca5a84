"""
Identity verification for inbound chat requests.

The edge proxy forwards a compact RS256 assertion in a request header. This
module:
1) decodes the three token segments,
2) fetches the issuer's key set (cached per issuer, TTL from Cache-Control),
3) verifies the signature against every key matching the token's key id,
4) validates issuer/audience/expiry claims,
5) maps the verified email onto an internal identity.

Authentication problems surface as 401, authorization problems (allowlist,
directory mapping) as 403. The only side effect of a successful call is key
cache population.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from config import AccessConfig, Settings
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    KeySetUnavailableError,
)
from logging_utils import email_domain, subject_prefix
from user_directory import DirectoryError, Identity, resolve_identity

SUPPORTED_ALGORITHM = "RS256"
JWKS_DEFAULT_MAX_AGE_SECONDS = 300
JWKS_MIN_MAX_AGE_SECONDS = 30
JWKS_FETCH_TIMEOUT_SECONDS = 5.0

_MAX_AGE_PATTERN = re.compile(r"max-age=(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class VerifiedClaims:
    iss: str
    aud: Tuple[str, ...]
    exp: int
    sub: str
    nbf: Optional[int] = None
    iat: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    identity_nonce: Optional[str] = None

    @property
    def primary_audience(self) -> str:
        return self.aud[0] if self.aud else ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VerifiedClaims":
        raw_aud = payload.get("aud")
        if isinstance(raw_aud, str):
            audience: Tuple[str, ...] = (raw_aud,)
        elif isinstance(raw_aud, list):
            audience = tuple(str(item) for item in raw_aud if isinstance(item, str))
        else:
            audience = ()

        def _optional_int(value: Any) -> Optional[int]:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            return int(value)

        def _optional_str(value: Any) -> Optional[str]:
            return value if isinstance(value, str) else None

        return cls(
            iss=str(payload.get("iss") or ""),
            aud=audience,
            exp=_optional_int(payload.get("exp")) or 0,
            sub=str(payload.get("sub") or ""),
            nbf=_optional_int(payload.get("nbf")),
            iat=_optional_int(payload.get("iat")),
            email=_optional_str(payload.get("email")),
            name=_optional_str(payload.get("name")),
            identity_nonce=_optional_str(payload.get("identity_nonce")),
        )


@dataclass(frozen=True)
class AuthContext:
    claims: VerifiedClaims
    email: str
    identity: Identity


@dataclass
class _JwksCacheEntry:
    keys: List[Dict[str, Any]]
    expires_at: float


@dataclass
class JwksFetchResult:
    keys: List[Dict[str, Any]]
    cache_control: str = ""
    status_code: int = 200


JwksFetcher = Callable[[str], Awaitable[JwksFetchResult]]


async def fetch_jwks_over_https(url: str) -> JwksFetchResult:
    timeout = httpx.Timeout(JWKS_FETCH_TIMEOUT_SECONDS)
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url, headers={"Accept": "application/json"})
    if response.status_code != 200:
        return JwksFetchResult(keys=[], status_code=response.status_code)
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    keys = payload.get("keys") if isinstance(payload, dict) else None
    return JwksFetchResult(
        keys=[key for key in keys if isinstance(key, dict)] if isinstance(keys, list) else [],
        cache_control=response.headers.get("Cache-Control", ""),
        status_code=response.status_code,
    )


def _cache_ttl_seconds(cache_control: str) -> int:
    match = _MAX_AGE_PATTERN.search(cache_control or "")
    max_age = int(match.group(1)) if match else JWKS_DEFAULT_MAX_AGE_SECONDS
    return max(JWKS_MIN_MAX_AGE_SECONDS, max_age)


class JwksCache:
    """Process-local issuer key-set cache."""

    def __init__(
        self,
        fetcher: Optional[JwksFetcher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetcher = fetcher or fetch_jwks_over_https
        self._clock = clock
        self._entries: Dict[str, _JwksCacheEntry] = {}
        self.fetch_count = 0

    def set_fetcher(self, fetcher: Optional[JwksFetcher]) -> None:
        self._fetcher = fetcher or fetch_jwks_over_https

    def clear(self) -> None:
        self._entries.clear()

    async def get_keys(self, url: str, *, force_refresh: bool = False) -> List[Dict[str, Any]]:
        now = self._clock()
        cache_key = url.strip().lower()
        cached = self._entries.get(cache_key)
        if not force_refresh and cached is not None and cached.expires_at > now:
            return cached.keys

        self.fetch_count += 1
        try:
            result = await self._fetcher(url)
        except httpx.HTTPError as exc:
            raise KeySetUnavailableError(
                "Unable to fetch Access certificate set.",
                meta={"exc_type": type(exc).__name__},
            ) from exc
        if result.status_code != 200:
            raise KeySetUnavailableError(
                "Unable to fetch Access certificate set.",
                meta={"upstream_status": result.status_code},
            )
        if not result.keys:
            raise KeySetUnavailableError(
                "Access certificate set is invalid.", code="AUTH_CERT_INVALID"
            )

        self._entries[cache_key] = _JwksCacheEntry(
            keys=list(result.keys),
            expires_at=now + _cache_ttl_seconds(result.cache_control),
        )
        return self._entries[cache_key].keys

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "issuers": len(self._entries),
            "fresh": sum(1 for entry in self._entries.values() if entry.expires_at > now),
            "fetch_count": self.fetch_count,
        }


def decode_base64url(value: str) -> bytes:
    padded = value + "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _decode_segment_json(segment: str) -> Dict[str, Any]:
    decoded = json.loads(decode_base64url(segment).decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("token segment is not a JSON object")
    return decoded


def _public_key_from_jwk(jwk: Dict[str, Any]) -> rsa.RSAPublicKey:
    if str(jwk.get("kty") or "RSA") != "RSA":
        raise ValueError("unsupported key type")
    modulus = int.from_bytes(decode_base64url(str(jwk["n"])), "big")
    exponent = int.from_bytes(decode_base64url(str(jwk["e"])), "big")
    return rsa.RSAPublicNumbers(exponent, modulus).public_key()


def _verify_with_jwk(jwk: Dict[str, Any], signing_input: bytes, signature: bytes) -> bool:
    try:
        public_key = _public_key_from_jwk(jwk)
    except (KeyError, ValueError, TypeError, binascii.Error):
        return False
    try:
        public_key.verify(signature, signing_input, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


async def verify_signature(
    token: str, header: Dict[str, Any], access: AccessConfig, jwks_cache: JwksCache
) -> None:
    segments = token.split(".")
    if len(segments) != 3:
        raise AuthenticationError("Malformed access token.")
    if header.get("alg") != SUPPORTED_ALGORITHM:
        raise AuthenticationError("Unsupported token algorithm.")

    header_segment, payload_segment, signature_segment = segments
    signing_input = f"{header_segment}.{payload_segment}".encode("ascii")
    try:
        signature = decode_base64url(signature_segment)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationError("Malformed access token signature.") from exc

    url = access.resolved_jwks_url
    kid = header.get("kid")
    keys = await jwks_cache.get_keys(url)
    candidates = [key for key in keys if key.get("kid") == kid] if kid else list(keys)
    if kid and not candidates:
        # Issuer may have rotated keys since the cache was filled.
        keys = await jwks_cache.get_keys(url, force_refresh=True)
        candidates = [key for key in keys if key.get("kid") == kid]

    if not candidates:
        raise AuthenticationError("No matching verification key found.")

    for jwk in candidates:
        if _verify_with_jwk(jwk, signing_input, signature):
            return
    raise AuthenticationError("Invalid access token signature.")


def validate_claims(
    claims: VerifiedClaims, access: AccessConfig, now: Optional[float] = None
) -> None:
    now_seconds = int(time.time() if now is None else now)

    if not claims.exp or claims.exp <= now_seconds:
        raise AuthenticationError("Access token is expired.")
    if claims.nbf is not None and claims.nbf > now_seconds:
        raise AuthenticationError("Access token is not valid yet.")

    if claims.iss.rstrip("/") != access.expected_issuer.rstrip("/"):
        raise AuthenticationError("Access token issuer mismatch.")
    if access.audience not in claims.aud:
        raise AuthenticationError("Access token audience mismatch.")
    if not claims.sub:
        raise AuthenticationError("Access token subject missing.")


def _authorization_meta(email: str, claims: VerifiedClaims) -> Dict[str, Any]:
    return {
        "attempted_email_domain": email_domain(email),
        "subject_prefix": subject_prefix(claims.sub),
    }


async def authenticate(
    token: Optional[str],
    settings: Settings,
    jwks_cache: JwksCache,
    *,
    now: Optional[float] = None,
) -> AuthContext:
    """Verify an assertion and resolve it to an identity, or raise."""
    missing = settings.missing_auth_settings()
    if missing:
        raise ConfigurationError(
            "Authentication is not configured.", meta={"missing": list(missing)}
        )

    raw_token = (token or "").strip()
    if not raw_token:
        raise AuthenticationError("Missing Access assertion.")

    segments = raw_token.split(".")
    if len(segments) != 3:
        raise AuthenticationError("Malformed access token.")

    try:
        header = _decode_segment_json(segments[0])
        payload = _decode_segment_json(segments[1])
    except (ValueError, UnicodeDecodeError, binascii.Error) as exc:
        raise AuthenticationError("Malformed access token payload.") from exc

    await verify_signature(raw_token, header, settings.access, jwks_cache)
    claims = VerifiedClaims.from_payload(payload)
    validate_claims(claims, settings.access, now=now)

    email = (claims.email or "").strip().lower()
    if not email:
        raise AuthorizationError(
            "Email claim missing in Access token.",
            meta={"subject_prefix": subject_prefix(claims.sub)},
        )

    if email not in settings.access.allowed_emails:
        raise AuthorizationError(
            "User is not allowed for this API.",
            meta=_authorization_meta(email, claims),
        )

    try:
        identity = resolve_identity(
            email,
            name_hint=claims.name,
            directory_json=settings.access.user_directory_json,
        )
    except DirectoryError as exc:
        raise AuthorizationError(
            "User identity mapping is not configured for this account.",
            meta=_authorization_meta(email, claims),
        ) from exc

    return AuthContext(claims=claims, email=email, identity=identity)
