from __future__ import annotations

import hashlib
import hmac
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Deque, Dict, Tuple

from argon2 import PasswordHasher
from argon2 import exceptions as argon2_exceptions

ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST_KIB = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16

_ARGON2_HASHER = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST_KIB,
    parallelism=ARGON2_PARALLELISM,
    hash_len=ARGON2_HASH_LEN,
    salt_len=ARGON2_SALT_LEN,
)

# Older installs stored a bare SHA-256 hex digest of the operator password.
_LEGACY_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_password(password: str) -> str:
    return _ARGON2_HASHER.hash(password)


def is_legacy_hash(encoded_hash: str) -> bool:
    return bool(_LEGACY_SHA256_RE.match(encoded_hash.strip().lower()))


def _verify_legacy_sha256(password: str, encoded_hash: str) -> bool:
    computed = hashlib.sha256(password.encode("utf-8")).hexdigest()
    return hmac.compare_digest(computed, encoded_hash.strip().lower())


def verify_password(password: str, encoded_hash: str) -> bool:
    encoded_hash = encoded_hash.strip()
    if not encoded_hash:
        return False
    if encoded_hash.startswith("$argon2id$"):
        try:
            return _ARGON2_HASHER.verify(encoded_hash, password)
        except (argon2_exceptions.VerifyMismatchError, argon2_exceptions.InvalidHashError):
            return False
    if is_legacy_hash(encoded_hash):
        return _verify_legacy_sha256(password, encoded_hash)
    return False


def password_needs_rehash(encoded_hash: str) -> bool:
    encoded_hash = encoded_hash.strip()
    if not encoded_hash.startswith("$argon2id$"):
        return True
    try:
        return _ARGON2_HASHER.check_needs_rehash(encoded_hash)
    except argon2_exceptions.InvalidHashError:
        return True


@dataclass
class _RateBucket:
    failures: Deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0


class LoginRateLimiter:
    """Locks a client out after repeated failed operator logins."""

    def __init__(
        self, *, max_failures: int = 5, window_seconds: int = 60, lockout_seconds: int = 300
    ) -> None:
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._lockout_seconds = lockout_seconds
        self._buckets: Dict[str, _RateBucket] = {}
        self._lock = Lock()

    def check(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return True, 0
            self._prune(bucket, now)
            if bucket.blocked_until > now:
                return False, max(1, math.ceil(bucket.blocked_until - now))
            return True, 0

    def record_failure(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _RateBucket())
            self._prune(bucket, now)
            bucket.failures.append(now)
            if len(bucket.failures) >= self._max_failures:
                bucket.blocked_until = now + self._lockout_seconds
                bucket.failures.clear()

    def record_success(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _prune(self, bucket: _RateBucket, now: float) -> None:
        threshold = now - self._window_seconds
        while bucket.failures and bucket.failures[0] < threshold:
            bucket.failures.popleft()
