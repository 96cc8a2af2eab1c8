from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from reconciler.config import Settings, get_settings
from reconciler.errors import (
    AuthenticationFailed,
    BackendError,
    BackendUnreachable,
    CannotRemoveAdmin,
    ConflictError,
    NotFoundError,
    ReconcilerError,
    ReloadFailed,
    ValidationError,
)
from reconciler.logger import get_logger
from reconciler.security import LoginRateLimiter
from reconciler.services.alerts import AlertCatalog
from reconciler.services.auth import verify_operator
from reconciler.services.credentials import CredentialStore
from reconciler.services.nats import NatsBackend
from reconciler.services.rabbitmq import RabbitManagementClient, RabbitMQBackend
from reconciler.services.storage import resolve_path
from reconciler.services.targets import TargetRegistry
from reconciler.services.tenants import TenantBackend, TenantManager

_AUTH_LOGGER = get_logger("api.auth")
_LOGIN_LIMITER = LoginRateLimiter()
_BASIC = HTTPBasic(auto_error=False)


def infra_path(settings: Settings, raw: str) -> Path:
    """Resolve a configured path against ``INFRA_ROOT``."""
    return resolve_path(raw, root=resolve_path(settings.infra_root))


def build_target_registry(settings: Settings) -> TargetRegistry:
    return TargetRegistry(
        infra_path(settings, settings.targets_dir),
        default_host=settings.default_target_host,
    )


def build_alert_catalog(settings: Settings) -> AlertCatalog:
    return AlertCatalog(infra_path(settings, settings.alert_rules_dir))


def _build_nats(settings: Settings) -> TenantBackend:
    return NatsBackend(
        infra_path(settings, settings.nats_config_dir),
        host=settings.nats_host,
        port=settings.nats_port,
        sys_password=settings.nats_sys_password,
        reload_command=settings.nats_reload_command,
        reload_timeout_seconds=settings.nats_reload_timeout_seconds,
    )


def _build_rabbitmq(settings: Settings) -> TenantBackend:
    client = RabbitManagementClient(
        settings.rabbitmq_api_url,
        settings.rabbitmq_admin_user,
        settings.rabbitmq_admin_pass,
        timeout_seconds=settings.rabbitmq_api_timeout_seconds,
    )
    return RabbitMQBackend(client, host=settings.rabbitmq_host, port=settings.rabbitmq_port)


BACKEND_BUILDERS: Dict[str, Callable[[Settings], TenantBackend]] = {
    "nats": _build_nats,
    "rabbitmq": _build_rabbitmq,
}
_CREDENTIAL_DIRS: Dict[str, Callable[[Settings], str]] = {
    "nats": lambda settings: settings.nats_credentials_dir,
    "rabbitmq": lambda settings: settings.rabbitmq_credentials_dir,
}


def build_tenant_manager(settings: Settings, backend_name: str) -> TenantManager:
    builder = BACKEND_BUILDERS[backend_name]
    credentials = CredentialStore(infra_path(settings, _CREDENTIAL_DIRS[backend_name](settings)))
    return TenantManager(builder(settings), credentials)


def get_target_registry(settings: Settings = Depends(get_settings)) -> TargetRegistry:
    return build_target_registry(settings)


def get_alert_catalog(settings: Settings = Depends(get_settings)) -> AlertCatalog:
    return build_alert_catalog(settings)


def get_tenant_manager(backend: str, settings: Settings = Depends(get_settings)) -> TenantManager:
    if backend not in BACKEND_BUILDERS:
        raise HTTPException(status_code=404, detail=f"Unknown backend '{backend}'")
    return build_tenant_manager(settings, backend)


def http_error(exc: ReconcilerError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, CannotRemoveAdmin):
        status_code = 403
    elif isinstance(exc, BackendUnreachable):
        status_code = 503
    elif isinstance(exc, (BackendError, ReloadFailed)):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(exc))


def require_operator(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(_BASIC),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.auth_required:
        return
    client = request.client.host if request.client else "unknown"
    allowed, retry_after = _LOGIN_LIMITER.check(client)
    if not allowed:
        _AUTH_LOGGER.warning("auth.locked", "Rejected request from locked-out client", client=client)
        raise HTTPException(
            status_code=429,
            detail="Too many failed logins",
            headers={"Retry-After": str(retry_after)},
        )
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    try:
        ok = verify_operator(infra_path(settings, settings.auth_password_file), credentials.password)
    except AuthenticationFailed as exc:
        raise HTTPException(status_code=503, detail=exc.detail) from exc
    if not ok:
        _LOGIN_LIMITER.record_failure(client)
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    _LOGIN_LIMITER.record_success(client)
