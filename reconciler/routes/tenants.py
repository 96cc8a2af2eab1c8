from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status

from reconciler.dependencies import get_tenant_manager, http_error, require_operator
from reconciler.errors import ReconcilerError
from reconciler.schemas.tenants import (
    ConnectionDescriptor,
    ConnectionTestResult,
    TenantCreate,
    TenantOut,
    UserCreate,
)
from reconciler.services.tenants import TenantManager

# Tenant removal is interactive-only and has no HTTP route.
router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Depends(require_operator)])


@router.get("/{backend}", response_model=List[TenantOut])
def list_tenants(manager: TenantManager = Depends(get_tenant_manager)) -> List[TenantOut]:
    try:
        return manager.list()
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.post("/{backend}", response_model=ConnectionDescriptor, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: TenantCreate,
    manager: TenantManager = Depends(get_tenant_manager),
) -> ConnectionDescriptor:
    try:
        return manager.create_tenant(payload.name, payload.limits)
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.post("/{backend}/reload")
def reload_backend(manager: TenantManager = Depends(get_tenant_manager)) -> Dict[str, bool]:
    try:
        return {"reloaded": manager.reload()}
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.get("/{backend}/{tenant}", response_model=ConnectionDescriptor)
def show_tenant(
    tenant: str,
    user: Optional[str] = None,
    manager: TenantManager = Depends(get_tenant_manager),
) -> ConnectionDescriptor:
    try:
        return manager.show(tenant, user)
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.post("/{backend}/{tenant}/users", response_model=ConnectionDescriptor, status_code=status.HTTP_201_CREATED)
def add_user(
    tenant: str,
    payload: UserCreate,
    manager: TenantManager = Depends(get_tenant_manager),
) -> ConnectionDescriptor:
    try:
        return manager.add_user(tenant, payload.user, payload.permissions)
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.delete("/{backend}/{tenant}/users/{user}")
def remove_user(
    tenant: str,
    user: str,
    manager: TenantManager = Depends(get_tenant_manager),
) -> Dict[str, bool]:
    try:
        return {"removed": True, "reloaded": manager.remove_user(tenant, user)}
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.post("/{backend}/{tenant}/test", response_model=ConnectionTestResult)
def test_connection(
    tenant: str,
    user: Optional[str] = None,
    manager: TenantManager = Depends(get_tenant_manager),
) -> ConnectionTestResult:
    try:
        return manager.test_connection(tenant, user)
    except ReconcilerError as exc:
        raise http_error(exc) from exc
