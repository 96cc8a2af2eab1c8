from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from reconciler.config import Settings, get_settings
from reconciler.dependencies import get_alert_catalog, http_error, infra_path, require_operator
from reconciler.errors import ReconcilerError
from reconciler.schemas.alerts import AlertChange, AlertRuleStatus, SyncReport
from reconciler.services.alerts import AlertCatalog, sync_from_store
from reconciler.services.reload import notify_prometheus

router = APIRouter(prefix="/alerts", tags=["alerts"], dependencies=[Depends(require_operator)])


@router.get("", response_model=List[AlertRuleStatus])
def alert_status(catalog: AlertCatalog = Depends(get_alert_catalog)) -> List[AlertRuleStatus]:
    return catalog.status()


@router.post("/sync", response_model=SyncReport)
def sync_alerts(
    reload: bool = True,
    catalog: AlertCatalog = Depends(get_alert_catalog),
    settings: Settings = Depends(get_settings),
) -> SyncReport:
    try:
        return sync_from_store(
            catalog,
            infra_path(settings, settings.services_conf_path),
            reload_url=settings.prometheus_reload_url,
            timeout_seconds=settings.reload_timeout_seconds,
            reload=reload,
        )
    except ReconcilerError as exc:
        raise http_error(exc) from exc


def _toggle(catalog: AlertCatalog, settings: Settings, category: str, *, enabled: bool) -> AlertChange:
    try:
        change = catalog.enable(category) if enabled else catalog.disable(category)
    except ReconcilerError as exc:
        raise http_error(exc) from exc
    if change.action != "unchanged":
        outcome = notify_prometheus(settings.prometheus_reload_url, timeout_seconds=settings.reload_timeout_seconds)
        change.reloaded = outcome.ok
    return change


@router.post("/{category}/enable", response_model=AlertChange)
def enable_alert(
    category: str,
    catalog: AlertCatalog = Depends(get_alert_catalog),
    settings: Settings = Depends(get_settings),
) -> AlertChange:
    return _toggle(catalog, settings, category, enabled=True)


@router.post("/{category}/disable", response_model=AlertChange)
def disable_alert(
    category: str,
    catalog: AlertCatalog = Depends(get_alert_catalog),
    settings: Settings = Depends(get_settings),
) -> AlertChange:
    return _toggle(catalog, settings, category, enabled=False)
