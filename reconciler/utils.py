from __future__ import annotations

import re
import secrets
import string
from urllib.parse import quote

from reconciler.errors import InvalidName, MissingName

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]{0,62}$")
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def validate_identifier(raw: str, *, entity: str) -> str:
    """Check a tenant or user name and return its lower-cased form."""
    value = (raw or "").strip()
    if not value:
        raise MissingName(entity)
    if not _IDENTIFIER_RE.match(value):
        raise InvalidName(
            f"{entity} '{value}'",
            "must start with a letter and contain only letters, digits, dash or underscore (max 63 chars)",
        )
    return value.lower()


def account_name(tenant: str) -> str:
    return tenant.upper().replace("-", "_")


def generate_password(length: int = 32) -> str:
    if length < 24:
        length = 24
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def url_escape(value: str) -> str:
    return quote(value, safe="")


def split_csv(raw: str | None) -> list[str]:
    values: list[str] = []
    for item in (raw or "").split(","):
        clean = item.strip()
        if clean:
            values.append(clean)
    return values
