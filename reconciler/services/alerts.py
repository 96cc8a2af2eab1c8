from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

import yaml

from reconciler.errors import AlertFileMissing, UnknownCategory
from reconciler.logger import get_logger
from reconciler.metrics import record_alert_rename, record_operation
from reconciler.schemas.alerts import AlertChange, AlertRuleStatus, SyncReport
from reconciler.schemas.declarations import ServiceDeclaration
from reconciler.services.declarations import load_declarations
from reconciler.services.reload import notify_prometheus

_logger = get_logger("services.alerts")

ENABLED_SUFFIX = ".yml"
DISABLED_SUFFIX = ".yml.disabled"
_ORDINAL_RE = re.compile(r"^\d{2}-")

REASON_CORE = "core"
REASON_SERVICE_ENABLED = "service enabled"
REASON_INSTRUMENTATION = "requires app instrumentation"
REASON_SERVICE_DISABLED = "service not enabled"
REASON_MANUAL = "manual"
REASON_ENV = "env"


class AlertCategory(str, Enum):
    INFRASTRUCTURE = "01-infrastructure.yml"
    CONTAINERS = "02-containers.yml"
    OBSERVABILITY = "03-observability.yml"
    POSTGRESQL = "04-postgresql.yml"
    REDIS = "05-redis.yml"
    NATS = "06-nats.yml"
    TASK_QUEUE = "07-task-queue.yml"
    RABBITMQ = "09-rabbitmq.yml"
    MONGODB = "10-mongodb.yml"
    TRAEFIK = "11-traefik.yml"
    GARAGE = "12-garage.yml"
    SECURITY = "13-security.yml"
    MYSQL = "14-mysql.yml"
    MEMCACHED = "15-memcached.yml"
    CLICKHOUSE = "16-clickhouse.yml"
    KAFKA = "17-kafka.yml"
    MINIO = "18-minio.yml"


CATEGORY_ALIASES: Dict[str, AlertCategory] = {
    "infrastructure": AlertCategory.INFRASTRUCTURE,
    "containers": AlertCategory.CONTAINERS,
    "observability": AlertCategory.OBSERVABILITY,
    "postgresql": AlertCategory.POSTGRESQL,
    "postgres": AlertCategory.POSTGRESQL,
    "pg": AlertCategory.POSTGRESQL,
    "postgres-ha": AlertCategory.POSTGRESQL,
    "timescaledb": AlertCategory.POSTGRESQL,
    "redis": AlertCategory.REDIS,
    "nats": AlertCategory.NATS,
    "task-queue": AlertCategory.TASK_QUEUE,
    "taskqueue": AlertCategory.TASK_QUEUE,
    "asynq": AlertCategory.TASK_QUEUE,
    "bullmq": AlertCategory.TASK_QUEUE,
    "rabbitmq": AlertCategory.RABBITMQ,
    "rabbit": AlertCategory.RABBITMQ,
    "mongodb": AlertCategory.MONGODB,
    "mongo": AlertCategory.MONGODB,
    "traefik": AlertCategory.TRAEFIK,
    "garage": AlertCategory.GARAGE,
    "security": AlertCategory.SECURITY,
    "authentik": AlertCategory.SECURITY,
    "vault": AlertCategory.SECURITY,
    "mysql": AlertCategory.MYSQL,
    "memcached": AlertCategory.MEMCACHED,
    "clickhouse": AlertCategory.CLICKHOUSE,
    "kafka": AlertCategory.KAFKA,
    "minio": AlertCategory.MINIO,
}

# services.conf key -> rule file. Task-queue alerts stay off until an app is
# instrumented, so no declaration maps to them.
SERVICE_TO_ALERT: Dict[str, AlertCategory] = {
    "postgres": AlertCategory.POSTGRESQL,
    "postgres-ha": AlertCategory.POSTGRESQL,
    "timescaledb": AlertCategory.POSTGRESQL,
    "redis": AlertCategory.REDIS,
    "mongo": AlertCategory.MONGODB,
    "mysql": AlertCategory.MYSQL,
    "memcached": AlertCategory.MEMCACHED,
    "clickhouse": AlertCategory.CLICKHOUSE,
    "nats": AlertCategory.NATS,
    "rabbitmq": AlertCategory.RABBITMQ,
    "kafka": AlertCategory.KAFKA,
    "garage": AlertCategory.GARAGE,
    "minio": AlertCategory.MINIO,
    "traefik": AlertCategory.TRAEFIK,
    "authentik": AlertCategory.SECURITY,
    "vault": AlertCategory.SECURITY,
}

CORE_ALERTS: FrozenSet[str] = frozenset(
    {
        AlertCategory.INFRASTRUCTURE.value,
        AlertCategory.CONTAINERS.value,
        AlertCategory.OBSERVABILITY.value,
    }
)

INSTRUMENTATION_ALERTS: FrozenSet[str] = frozenset({AlertCategory.TASK_QUEUE.value})


def category_name(file_name: str) -> str:
    """``04-postgresql.yml`` -> ``postgresql``."""
    base = file_name[: -len(ENABLED_SUFFIX)] if file_name.endswith(ENABLED_SUFFIX) else file_name
    return _ORDINAL_RE.sub("", base)


# Legacy .env toggles (ALERTS_POSTGRESQL=false, ...).
ENV_VARS: Dict[AlertCategory, str] = {
    category: "ALERTS_" + category_name(category.value).upper().replace("-", "_")
    for category in AlertCategory
}


def resolve_category(raw: str | AlertCategory) -> AlertCategory:
    if isinstance(raw, AlertCategory):
        return raw
    category = CATEGORY_ALIASES.get(str(raw).strip().lower())
    if category is None:
        raise UnknownCategory(str(raw), CATEGORY_ALIASES.keys())
    return category


def source_services(file_name: str) -> List[str]:
    return sorted(name for name, category in SERVICE_TO_ALERT.items() if category.value == file_name)


def desired_enabled(declarations: Iterable[ServiceDeclaration]) -> Set[str]:
    """Core files plus every file mapped from at least one enabled service."""
    desired: Set[str] = set(CORE_ALERTS)
    for declaration in declarations:
        if not declaration.enabled:
            continue
        category = SERVICE_TO_ALERT.get(declaration.name)
        if category is not None:
            desired.add(category.value)
    return desired


def _count_rules(path: Path) -> Optional[int]:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        _logger.warning("alerts.parse", "Could not parse alert rule file", path=str(path), error=str(exc))
        return None
    if not isinstance(document, dict):
        return 0
    groups = document.get("groups") or []
    if not isinstance(groups, list):
        return 0
    total = 0
    for group in groups:
        if isinstance(group, dict) and isinstance(group.get("rules"), list):
            total += len(group["rules"])
    return total


class AlertCatalog:
    """Enabled/disabled state of the rule files Prometheus loads."""

    def __init__(self, rules_dir: Path) -> None:
        self.rules_dir = rules_dir

    def _enabled_path(self, file_name: str) -> Path:
        return self.rules_dir / file_name

    def _disabled_path(self, file_name: str) -> Path:
        return self.rules_dir / f"{file_name}.disabled"

    def state_of(self, file_name: str) -> str:
        if self._enabled_path(file_name).is_file():
            return "enabled"
        if self._disabled_path(file_name).is_file():
            return "disabled"
        return "missing"

    def files_on_disk(self) -> List[str]:
        if not self.rules_dir.is_dir():
            return []
        names: Set[str] = set()
        for path in self.rules_dir.iterdir():
            if not path.is_file():
                continue
            if path.name.endswith(DISABLED_SUFFIX):
                names.add(path.name[: -len(".disabled")])
            elif path.name.endswith(ENABLED_SUFFIX):
                names.add(path.name)
        return sorted(names)

    def status(self) -> List[AlertRuleStatus]:
        names = set(self.files_on_disk())
        names.update(category.value for category in AlertCategory)
        rows: List[AlertRuleStatus] = []
        for file_name in sorted(names):
            state = self.state_of(file_name)
            rule_count: Optional[int] = None
            if state == "enabled":
                rule_count = _count_rules(self._enabled_path(file_name))
            elif state == "disabled":
                rule_count = _count_rules(self._disabled_path(file_name))
            rows.append(
                AlertRuleStatus(
                    file=file_name,
                    category=category_name(file_name),
                    state=state,
                    core=file_name in CORE_ALERTS,
                    requires_instrumentation=file_name in INSTRUMENTATION_ALERTS,
                    source_services=source_services(file_name),
                    rule_count=rule_count,
                )
            )
        return rows

    def _ensure(self, file_name: str, *, enabled: bool, reason: str) -> AlertChange:
        enabled_path = self._enabled_path(file_name)
        disabled_path = self._disabled_path(file_name)
        if enabled_path.is_file() and disabled_path.is_file():
            _logger.warning(
                "alerts.conflict",
                "Both enabled and disabled copies exist; leaving files untouched",
                file=file_name,
            )
            return AlertChange(
                file=file_name,
                category=category_name(file_name),
                action="unchanged",
                reason=reason,
                state="enabled",
            )

        source, dest = (disabled_path, enabled_path) if enabled else (enabled_path, disabled_path)
        wanted = "enabled" if enabled else "disabled"
        if dest.is_file():
            action = "unchanged"
        elif source.is_file():
            os.replace(source, dest)
            record_alert_rename(enabled=enabled)
            action = wanted
        else:
            raise AlertFileMissing(file_name)
        return AlertChange(
            file=file_name,
            category=category_name(file_name),
            action=action,
            reason=reason,
            state=wanted,
        )

    def enable(self, alias: str | AlertCategory) -> AlertChange:
        return self._toggle(alias, enabled=True)

    def disable(self, alias: str | AlertCategory) -> AlertChange:
        return self._toggle(alias, enabled=False)

    def _toggle(self, alias: str | AlertCategory, *, enabled: bool) -> AlertChange:
        category = resolve_category(alias)
        action = "alerts.enable" if enabled else "alerts.disable"
        try:
            change = self._ensure(category.value, enabled=enabled, reason=REASON_MANUAL)
        except AlertFileMissing:
            record_operation(action=action, ok=False)
            raise
        record_operation(action=action, ok=True)
        _logger.info(
            action,
            "Alert category already in requested state" if change.action == "unchanged" else "Toggled alert category",
            alias=str(alias),
            file=category.value,
            state=change.state,
        )
        return change

    def _apply_all(self, *, enabled: bool, reason: str) -> SyncReport:
        changes = [self._ensure(name, enabled=enabled, reason=reason) for name in self.files_on_disk()]
        return _report(changes)

    def enable_all(self) -> SyncReport:
        return self._apply_all(enabled=True, reason=REASON_MANUAL)

    def disable_all(self) -> SyncReport:
        return self._apply_all(enabled=False, reason=REASON_MANUAL)

    def sync(self, declarations: Iterable[ServiceDeclaration]) -> SyncReport:
        with _logger.operation(
            "alerts.sync",
            "Syncing alert rules with service declarations",
            rules_dir=str(self.rules_dir),
        ) as op:
            desired = desired_enabled(declarations)
            on_disk = self.files_on_disk()
            op.step("plan", "Computed desired alert state", desired=len(desired), on_disk=len(on_disk))

            for core_file in sorted(CORE_ALERTS - set(on_disk)):
                op.step_warning("core.missing", "Core alert file is missing", file=core_file)

            changes: List[AlertChange] = []
            for file_name in on_disk:
                if file_name in desired:
                    reason = REASON_CORE if file_name in CORE_ALERTS else REASON_SERVICE_ENABLED
                    change = self._ensure(file_name, enabled=True, reason=reason)
                elif file_name in INSTRUMENTATION_ALERTS:
                    change = self._ensure(file_name, enabled=False, reason=REASON_INSTRUMENTATION)
                else:
                    change = self._ensure(file_name, enabled=False, reason=REASON_SERVICE_DISABLED)
                changes.append(change)
                if change.action != "unchanged":
                    op.child("apply", file_name, "Renamed alert rule file", state=change.state, reason=change.reason)

            report = _report(changes)
            op.step(
                "summary",
                "Alert sync finished",
                enabled=report.enabled_count,
                disabled=report.disabled_count,
            )
            record_operation(action="alerts.sync", ok=True)
            return report

    def apply_env(self, env: Mapping[str, str]) -> SyncReport:
        """Legacy ``ALERTS_*=true|false`` toggles; unset variables mean enabled."""
        changes: List[AlertChange] = []
        for category, var in ENV_VARS.items():
            if self.state_of(category.value) == "missing":
                _logger.debug("alerts.env.skip", "Alert file not present", file=category.value, var=var)
                continue
            value = env.get(var, "true").strip().lower()
            enabled = value in {"true", "1", "yes"}
            changes.append(self._ensure(category.value, enabled=enabled, reason=f"{REASON_ENV} {var}={value}"))
        record_operation(action="alerts.apply_env", ok=True)
        return _report(changes)


def _report(changes: List[AlertChange]) -> SyncReport:
    return SyncReport(
        changes=changes,
        enabled_count=sum(1 for item in changes if item.action == "enabled"),
        disabled_count=sum(1 for item in changes if item.action == "disabled"),
    )


def sync_from_store(
    catalog: AlertCatalog,
    services_conf: Path,
    *,
    reload_url: str,
    timeout_seconds: float,
    reload: bool = True,
) -> SyncReport:
    """Read the declaration store, reconcile rule files, then ask Prometheus to reload."""
    report = catalog.sync(load_declarations(services_conf))
    if reload:
        outcome = notify_prometheus(reload_url, timeout_seconds=timeout_seconds)
        report.reloaded = outcome.ok
    return report
