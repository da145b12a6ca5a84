import json

import pytest

from access import VerifiedClaims
from errors import ConfigurationError, SessionMismatchError
from helpers.access_tokens import SESSION_SECRET, b64url, make_claims
from session import derive_session_id, require_matching_session
from use_case_lock import mint_lock_token, verify_lock_token

_LOCK_SECRET = f"{SESSION_SECRET}:use-case-lock"


def _claims(**overrides) -> VerifiedClaims:
    return VerifiedClaims.from_payload(make_claims(**overrides))


def test_session_id_is_deterministic_for_identical_claims() -> None:
    claims = _claims()
    first = derive_session_id(claims, SESSION_SECRET)
    second = derive_session_id(_claims(), SESSION_SECRET)
    assert first == second
    assert "=" not in first
    assert len(first) == 43


def test_session_id_ignores_expiry_but_tracks_subject_nonce_audience() -> None:
    base = derive_session_id(_claims(), SESSION_SECRET)
    assert derive_session_id(_claims(ttl_seconds=60), SESSION_SECRET) == base
    assert derive_session_id(_claims(nonce="nonce-0002"), SESSION_SECRET) != base
    assert derive_session_id(_claims(sub="subject-0002"), SESSION_SECRET) != base
    assert derive_session_id(_claims(aud=["other-aud"]), SESSION_SECRET) != base
    assert derive_session_id(_claims(), "another-secret") != base


def test_session_id_requires_secret() -> None:
    with pytest.raises(ConfigurationError):
        derive_session_id(_claims(), "")


def test_require_matching_session_rejects_foreign_id() -> None:
    from access import AuthContext
    from user_directory import Identity

    auth = AuthContext(
        claims=_claims(),
        email="member@example.com",
        identity=Identity(user_id="user_x", username="member", alias="member"),
    )
    expected = derive_session_id(auth.claims, SESSION_SECRET)
    assert require_matching_session(expected, auth, SESSION_SECRET) == expected
    with pytest.raises(SessionMismatchError) as exc_info:
        require_matching_session("not-the-session-id", auth, SESSION_SECRET)
    assert exc_info.value.status == 403
    assert exc_info.value.message == "Session mismatch."


def test_lock_token_verifies_until_expiry() -> None:
    token = mint_lock_token(_LOCK_SECRET, "session-a", "cat", "tiered", 2000)

    lock = verify_lock_token(_LOCK_SECRET, token, "session-a", 1999)
    assert lock is not None
    assert (lock.use_case_id, lock.memory_mode, lock.expires_at) == ("cat", "tiered", 2000)

    assert verify_lock_token(_LOCK_SECRET, token, "session-a", 2000) is None
    assert verify_lock_token(_LOCK_SECRET, token, "session-a", 2500) is None


def test_lock_token_is_bound_to_session_and_secret() -> None:
    token = mint_lock_token(_LOCK_SECRET, "session-a", "gen", "classic", 2000)
    assert verify_lock_token(_LOCK_SECRET, token, "session-b", 1000) is None
    assert verify_lock_token(SESSION_SECRET, token, "session-a", 1000) is None


def test_lock_token_rejects_tampered_payload() -> None:
    token = mint_lock_token(_LOCK_SECRET, "session-a", "gen", "classic", 2000)
    _payload, signature = token.split(".")
    forged = b64url(
        json.dumps({"sid": "session-a", "uc": "upsc", "mm": "classic", "exp": 2000}).encode()
    )
    assert verify_lock_token(_LOCK_SECRET, f"{forged}.{signature}", "session-a", 1000) is None


@pytest.mark.parametrize("token", [None, "", "no-dot", "a.b.c", ".sig", "payload."])
def test_lock_token_rejects_malformed_values(token) -> None:
    assert verify_lock_token(_LOCK_SECRET, token, "session-a", 1000) is None


def test_mint_rejects_unknown_memory_mode() -> None:
    with pytest.raises(ValueError):
        mint_lock_token(_LOCK_SECRET, "session-a", "gen", "huge", 2000)
