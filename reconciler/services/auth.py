from __future__ import annotations

from pathlib import Path
from typing import Callable

from reconciler.errors import AuthenticationFailed, ValidationError
from reconciler.logger import get_logger
from reconciler.security import hash_password, password_needs_rehash, verify_password
from reconciler.services.storage import atomic_write_text

MIN_PASSWORD_LENGTH = 8

_logger = get_logger("services.auth")


def read_password_hash(path: Path) -> str:
    if not path.is_file():
        return ""
    return path.read_text(encoding="utf-8").strip()


def is_configured(path: Path) -> bool:
    return bool(read_password_hash(path))


def set_password(path: Path, password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError("operator password", f"must be at least {MIN_PASSWORD_LENGTH} characters")
    atomic_write_text(path, hash_password(password) + "\n", mode=0o600)
    _logger.info("auth.password.update", "Updated operator password", path=str(path))


def verify_operator(path: Path, password: str) -> bool:
    """Check ``password`` against the stored hash, upgrading legacy hashes on success."""
    stored = read_password_hash(path)
    if not stored:
        raise AuthenticationFailed("operator", f"password not configured; run 'set-password' first ({path})")
    if not verify_password(password, stored):
        _logger.warning("auth.denied", "Operator password rejected")
        return False
    if password_needs_rehash(stored):
        atomic_write_text(path, hash_password(password) + "\n", mode=0o600)
        _logger.info("auth.password.rehash", "Rehashed stored password with current algorithm parameters")
    return True


def require_operator(path: Path, prompt: Callable[[str], str]) -> None:
    if not is_configured(path):
        raise AuthenticationFailed("operator", f"password not configured; run 'set-password' first ({path})")
    password = prompt("Enter admin password: ")
    if not verify_operator(path, password):
        raise AuthenticationFailed("operator", "access denied: wrong password")
    _logger.info("auth.granted", "Operator authorized")
