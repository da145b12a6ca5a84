import json
import logging

from fastapi.testclient import TestClient

from helpers.access_tokens import configure_env
from logging_utils import email_domain, get_logger, redact_event, sanitize, subject_prefix


def test_sanitize_redacts_sensitive_keys_but_keeps_token_counts() -> None:
    cleaned = sanitize(
        {
            "api_key": "sk-live",
            "messages": [{"role": "user", "content": "secret"}],
            "input_tokens": 12,
            "prompt_tokens": "12",
            "nested": {"Authorization": "Bearer x", "turn": 3},
            "long": "x" * 400,
        }
    )
    assert cleaned["api_key"] == "[redacted]"
    assert cleaned["messages"] == "[redacted]"
    assert cleaned["input_tokens"] == 12
    assert cleaned["prompt_tokens"] == "[redacted]"
    assert cleaned["nested"] == {"Authorization": "[redacted]", "turn": 3}
    assert cleaned["long"].endswith("...[truncated]")


def test_redaction_processor_keeps_reserved_fields() -> None:
    cleaned = redact_event(
        None,
        "info",
        {"event": "memory.commit.success", "level": "info", "turn": 2, "content": "hidden"},
    )
    assert cleaned == {
        "event": "memory.commit.success",
        "level": "info",
        "turn": 2,
        "content": "[redacted]",
    }


def test_logger_emits_one_redacted_json_line(caplog) -> None:
    caplog.set_level(logging.INFO, logger="edge_chat")
    get_logger("test").bind(request_id="req-1").info(
        "memory.commit.success", turn=2, api_key="sk-live"
    )

    entry = json.loads(caplog.records[-1].getMessage())
    assert entry["event"] == "memory.commit.success"
    assert entry["level"] == "info"
    assert entry["logger"] == "edge_chat.test"
    assert entry["request_id"] == "req-1"
    assert entry["turn"] == 2
    assert entry["api_key"] == "[redacted]"
    assert entry["ts"].endswith("Z")


def test_identity_log_helpers() -> None:
    assert subject_prefix("abcdef0123456789") == "abcdef01"
    assert subject_prefix(None) == "unknown"
    assert email_domain("member@example.com") == "example.com"
    assert email_domain("broken") == "unknown"


def test_health_reports_runtime_and_auth_state(monkeypatch) -> None:
    configure_env(monkeypatch)
    import main

    with TestClient(main.app) as client:
        payload = client.get("/health").json()
    assert payload["status"] == "ok"
    assert payload["runtime"]["memory_store"]["sessions"] >= 0
    assert "memory_commits" in payload["runtime"]


def test_health_is_degraded_without_auth_settings(monkeypatch) -> None:
    configure_env(monkeypatch, ACCESS_TEAM_DOMAIN="", ACCESS_API_AUD="")
    import main

    with TestClient(main.app) as client:
        payload = client.get("/health").json()
    assert payload["status"] == "degraded"
    assert payload["reason"] == "auth_not_configured"
