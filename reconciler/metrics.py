from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

_OPERATIONS = Counter(
    "reconciler_operations_total",
    "Total reconcile operations",
    labelnames=("action", "result"),
)
_RELOADS = Counter(
    "reconciler_reloads_total",
    "Downstream reload attempts",
    labelnames=("target", "result"),
)
_RENAMES = Counter(
    "reconciler_alert_renames_total",
    "Alert rule files renamed by enable/disable/sync",
    labelnames=("direction",),
)


def record_operation(*, action: str, ok: bool) -> None:
    _OPERATIONS.labels(action=action, result="ok" if ok else "error").inc()


def record_reload(*, target: str, ok: bool) -> None:
    _RELOADS.labels(target=target, result="ok" if ok else "error").inc()


def record_alert_rename(*, enabled: bool) -> None:
    _RENAMES.labels(direction="enable" if enabled else "disable").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
