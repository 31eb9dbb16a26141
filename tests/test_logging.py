from wowziri.logging import (
    _redact_sensitive,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_secrets_masked_and_emails_keep_domain():
    event = _redact_sensitive(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "ada.lovelace@example.com",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "dev_otp": "123456",
            "status_code": 401,
            "user_id": "u-1",
        },
    )

    assert event["event"] == "login_failed"
    assert event["email"] == "ad***@example.com"
    assert event["refresh_token"] == "ey***ig"
    assert event["dev_otp"] == "123456"
    assert event["status_code"] == 401
    assert event["user_id"] == "u-1"


def test_short_secret_fully_masked():
    assert _redact_sensitive(None, "info", {"password": "abc"})["password"] == "***"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id(None)

    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"


def test_sanitize_error_message():
    cleaned = sanitize_error_message(
        "failed reading /var/lib/wowziri/state.json with password=hunter2"
    )

    assert "/var/lib" not in cleaned
    assert "hunter2" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
