from services.errors import (
    CompilationFailed,
    InvalidRequest,
    InvalidRule,
    QuotaExceeded,
    RulesetNotFound,
    clean_text,
    error_kind,
    public_error_message,
)


def test_clean_text_strips_newlines_and_bounds_length():
    s = "hello\nworld\r\n\t\x00!"
    out = clean_text(s, max_len=20)
    assert "\n" not in out
    assert "\r" not in out
    assert len(out) <= 20


def test_public_error_message_hides_details_by_default(monkeypatch):
    monkeypatch.delenv("EXPOSE_INTERNAL_ERRORS", raising=False)

    class SecretError(RuntimeError):
        pass

    msg = public_error_message(SecretError("db password=supersecret"))
    assert "supersecret" not in msg


def test_public_error_message_shows_valueerror_message(monkeypatch):
    monkeypatch.delenv("EXPOSE_INTERNAL_ERRORS", raising=False)
    msg = public_error_message(ValueError("Bad input: x"))
    assert "Bad input" in msg


def test_public_error_message_can_expose_details(monkeypatch):
    monkeypatch.setenv("EXPOSE_INTERNAL_ERRORS", "1")
    msg = public_error_message(RuntimeError("detail"))
    assert "RuntimeError" in msg
    assert "detail" in msg


def test_clean_text_truncates_with_ellipsis():
    out = clean_text("x" * 50, max_len=10)
    assert out == "xxxxxxx..."


def test_dnr_errors_are_user_facing(monkeypatch):
    monkeypatch.delenv("EXPOSE_INTERNAL_ERRORS", raising=False)
    e = QuotaExceeded("Too many dynamic rules (5001 > 5000).", client_id="ext")
    assert public_error_message(e) == "Too many dynamic rules (5001 > 5000)."
    assert e.client_id == "ext"


def test_error_kind():
    assert error_kind(InvalidRule("rules[0]: bad", index=0)) == "invalidRule"
    assert error_kind(QuotaExceeded()) == "quotaExceeded"
    assert error_kind(CompilationFailed()) == "compilationFailed"
    assert error_kind(RulesetNotFound()) == "rulesetNotFound"
    assert error_kind(InvalidRequest()) == "invalidRequest"
    assert error_kind(KeyError("x")) == "internalError"
