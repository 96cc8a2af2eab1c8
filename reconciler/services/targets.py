from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from reconciler.config import DEFAULT_TARGET_HOST
from reconciler.errors import (
    DuplicateTarget,
    InvalidName,
    InvalidTarget,
    MalformedDocument,
    MissingName,
    TargetNotFound,
    UnknownKind,
)
from reconciler.logger import get_logger
from reconciler.metrics import record_operation
from reconciler.schemas.targets import TargetEntry
from reconciler.services.storage import atomic_write_text, dump_json, load_json

_logger = get_logger("services.targets")
_NAME_RE = re.compile(r"^[^\s\"'\\]+$")

# Label keys older registry files use to identify an entry.
IDENTITY_LABELS: Tuple[str, ...] = ("name", "instance", "app", "database")


class TargetKind(str, Enum):
    POSTGRES = "postgres"
    TIMESCALEDB = "timescaledb"
    REDIS = "redis"
    RABBITMQ = "rabbitmq"
    NATS = "nats"
    MONGODB = "mongodb"
    MYSQL = "mysql"
    TRAEFIK = "traefik"
    GARAGE = "garage"
    LANGFUSE = "langfuse"
    APP = "app"


@dataclass(frozen=True)
class KindSpec:
    file: str
    identity_label: str
    default_port: int
    service_label: str


KIND_SPECS: Dict[TargetKind, KindSpec] = {
    TargetKind.POSTGRES: KindSpec("postgres.json", "name", 9187, "postgres"),
    TargetKind.TIMESCALEDB: KindSpec("timescaledb.json", "name", 9187, "timescaledb"),
    TargetKind.REDIS: KindSpec("redis.json", "name", 6379, "redis"),
    TargetKind.RABBITMQ: KindSpec("rabbitmq.json", "instance", 15692, "rabbitmq"),
    TargetKind.NATS: KindSpec("nats.json", "instance", 8222, "nats"),
    TargetKind.MONGODB: KindSpec("mongodb.json", "name", 9216, "mongodb"),
    TargetKind.MYSQL: KindSpec("mysql.json", "name", 9104, "mysql"),
    TargetKind.TRAEFIK: KindSpec("traefik.json", "instance", 8080, "traefik"),
    TargetKind.GARAGE: KindSpec("garage.json", "instance", 3903, "garage"),
    TargetKind.LANGFUSE: KindSpec("langfuse.json", "instance", 3000, "langfuse"),
    TargetKind.APP: KindSpec("applications.json", "app", 9090, "application"),
}

KIND_ALIASES: Dict[str, TargetKind] = {
    **{kind.value: kind for kind in TargetKind},
    "pg": TargetKind.POSTGRES,
    "postgresql": TargetKind.POSTGRES,
    "tsdb": TargetKind.TIMESCALEDB,
    "rabbit": TargetKind.RABBITMQ,
    "mongo": TargetKind.MONGODB,
    "application": TargetKind.APP,
    "applications": TargetKind.APP,
}


def resolve_kind(raw: str | TargetKind) -> TargetKind:
    if isinstance(raw, TargetKind):
        return raw
    kind = KIND_ALIASES.get(str(raw).strip().lower())
    if kind is None:
        raise UnknownKind(str(raw), (item.value for item in TargetKind))
    return kind


def _matches(labels: Dict[str, Any], name: str, spec: KindSpec) -> bool:
    keys = (spec.identity_label, *IDENTITY_LABELS)
    return any(labels.get(key) == name for key in keys)


def _validate_name(raw: Optional[str]) -> str:
    name = (raw or "").strip()
    if not name:
        raise MissingName("target")
    if not _NAME_RE.match(name):
        raise InvalidName(f"target '{name}'", "must not contain whitespace, quotes or backslashes")
    return name


def _validate_endpoint(host: str, port: int | str) -> Tuple[str, int]:
    clean_host = host.strip()
    if not clean_host or any(ch.isspace() for ch in clean_host):
        raise InvalidTarget(f"host '{host}'", "must be a non-empty hostname or address")
    try:
        port_value = int(port)
    except (TypeError, ValueError) as exc:
        raise InvalidTarget(f"port '{port}'", "must be an integer") from exc
    if port_value < 1 or port_value > 65535:
        raise InvalidTarget(f"port '{port}'", "must be between 1 and 65535")
    return clean_host, port_value


class TargetRegistry:
    """CRUD over the per-kind file_sd JSON documents Prometheus reads."""

    def __init__(self, targets_dir: Path, *, default_host: str = DEFAULT_TARGET_HOST) -> None:
        self.targets_dir = targets_dir
        self.default_host = default_host

    def path_for(self, kind: str | TargetKind) -> Path:
        return self.targets_dir / KIND_SPECS[resolve_kind(kind)].file

    def _load(self, kind: TargetKind) -> List[Dict[str, Any]]:
        path = self.path_for(kind)
        document = load_json(path, default=[])
        if not isinstance(document, list):
            raise MalformedDocument(str(path), "expected a JSON array of target entries")
        for index, item in enumerate(document):
            if not isinstance(item, dict):
                raise MalformedDocument(str(path), f"entry {index} is not an object")
            try:
                TargetEntry.model_validate(item)
            except PydanticValidationError as exc:
                raise MalformedDocument(str(path), f"entry {index} is invalid: {exc.errors()[0]['msg']}") from exc
        return document

    def list(self, kind: str | TargetKind) -> Iterator[TargetEntry]:
        resolved = resolve_kind(kind)
        for item in self._load(resolved):
            yield TargetEntry.model_validate(item)

    def list_all(self) -> Iterator[Tuple[TargetKind, List[TargetEntry]]]:
        for kind in TargetKind:
            yield kind, [entry for entry in self.list(kind)]

    def add(
        self,
        kind: str | TargetKind,
        name: Optional[str],
        host: Optional[str] = None,
        port: int | str | None = None,
        instance_type: Optional[str] = None,
    ) -> TargetEntry:
        resolved = resolve_kind(kind)
        spec = KIND_SPECS[resolved]
        clean_name = _validate_name(name)
        clean_host, port_value = _validate_endpoint(
            host if host is not None else self.default_host,
            port if port is not None else spec.default_port,
        )
        path = self.path_for(resolved)

        with _logger.operation(
            "targets.add",
            "Registering scrape target",
            kind=resolved.value,
            target=clean_name,
            path=str(path),
        ) as op:
            entries = self._load(resolved)
            if any(_matches(item.get("labels") or {}, clean_name, spec) for item in entries):
                record_operation(action="targets.add", ok=False)
                raise DuplicateTarget(resolved.value, clean_name)

            labels: Dict[str, str] = {spec.identity_label: clean_name, "service": spec.service_label}
            clean_type = (instance_type or "").strip()
            if clean_type:
                labels["instance_type"] = clean_type
            entry = TargetEntry(targets=[f"{clean_host}:{port_value}"], labels=labels)
            entries.append(entry.model_dump())

            atomic_write_text(path, dump_json(entries))
            op.step("file.write", "Wrote target registry", entries=len(entries))
            record_operation(action="targets.add", ok=True)
            return entry

    def remove(self, kind: str | TargetKind, name: Optional[str]) -> None:
        resolved = resolve_kind(kind)
        spec = KIND_SPECS[resolved]
        clean_name = _validate_name(name)
        path = self.path_for(resolved)

        with _logger.operation(
            "targets.remove",
            "Removing scrape target",
            kind=resolved.value,
            target=clean_name,
            path=str(path),
        ) as op:
            entries = self._load(resolved)
            kept = [item for item in entries if not _matches(item.get("labels") or {}, clean_name, spec)]
            if len(kept) == len(entries):
                record_operation(action="targets.remove", ok=False)
                raise TargetNotFound(resolved.value, clean_name)

            atomic_write_text(path, dump_json(kept))
            op.step("file.write", "Wrote target registry", entries=len(kept), removed=len(entries) - len(kept))
            record_operation(action="targets.remove", ok=True)
