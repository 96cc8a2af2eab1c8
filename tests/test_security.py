import hashlib
from pathlib import Path

import pytest

from reconciler.errors import AuthenticationFailed, ValidationError
from reconciler.security import LoginRateLimiter, hash_password, password_needs_rehash, verify_password
from reconciler.services import auth as auth_service


def test_argon2_hash_round_trip() -> None:
    encoded = hash_password("correct horse")

    assert encoded.startswith("$argon2id$")
    assert verify_password("correct horse", encoded) is True
    assert verify_password("wrong horse", encoded) is False
    assert password_needs_rehash(encoded) is False


def test_legacy_sha256_hash_is_accepted_but_flagged() -> None:
    legacy = hashlib.sha256(b"old-password").hexdigest()

    assert verify_password("old-password", legacy) is True
    assert verify_password("other", legacy) is False
    assert password_needs_rehash(legacy) is True


def test_unknown_hash_format_is_rejected() -> None:
    assert verify_password("anything", "") is False
    assert verify_password("anything", "plaintext") is False


def test_verify_operator_upgrades_legacy_hash(tmp_path: Path) -> None:
    path = tmp_path / ".password_hash"
    path.write_text(hashlib.sha256(b"old-password").hexdigest() + "\n", encoding="utf-8")

    assert auth_service.verify_operator(path, "old-password") is True

    upgraded = auth_service.read_password_hash(path)
    assert upgraded.startswith("$argon2id$")
    assert auth_service.verify_operator(path, "old-password") is True


def test_set_password_and_require_operator(tmp_path: Path) -> None:
    path = tmp_path / ".password_hash"

    with pytest.raises(ValidationError):
        auth_service.set_password(path, "short")
    with pytest.raises(AuthenticationFailed):
        auth_service.require_operator(path, lambda prompt: "whatever")

    auth_service.set_password(path, "long-enough")
    auth_service.require_operator(path, lambda prompt: "long-enough")
    with pytest.raises(AuthenticationFailed):
        auth_service.require_operator(path, lambda prompt: "wrong-password")


def test_login_rate_limiter_locks_out() -> None:
    limiter = LoginRateLimiter(max_failures=2, window_seconds=60, lockout_seconds=30)

    limiter.record_failure("10.0.0.1")
    assert limiter.check("10.0.0.1") == (True, 0)
    limiter.record_failure("10.0.0.1")

    allowed, retry_after = limiter.check("10.0.0.1")
    assert allowed is False
    assert retry_after > 0
    assert limiter.check("10.0.0.2") == (True, 0)
