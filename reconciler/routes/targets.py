from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response, status

from reconciler.dependencies import get_target_registry, http_error, require_operator
from reconciler.errors import ReconcilerError
from reconciler.schemas.targets import TargetCreate, TargetEntry, TargetKindOut
from reconciler.services.targets import KIND_SPECS, TargetKind, TargetRegistry, resolve_kind

router = APIRouter(prefix="/targets", tags=["targets"], dependencies=[Depends(require_operator)])


def _kind_out(kind: TargetKind, entries: List[TargetEntry]) -> TargetKindOut:
    spec = KIND_SPECS[kind]
    return TargetKindOut(
        kind=kind.value,
        file=spec.file,
        identity_label=spec.identity_label,
        default_port=spec.default_port,
        service_label=spec.service_label,
        targets=entries,
    )


@router.get("", response_model=List[TargetKindOut])
def list_all_targets(registry: TargetRegistry = Depends(get_target_registry)) -> List[TargetKindOut]:
    try:
        return [_kind_out(kind, entries) for kind, entries in registry.list_all()]
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.get("/{kind}", response_model=TargetKindOut)
def list_targets(kind: str, registry: TargetRegistry = Depends(get_target_registry)) -> TargetKindOut:
    try:
        resolved = resolve_kind(kind)
        return _kind_out(resolved, list(registry.list(resolved)))
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.post("/{kind}", response_model=TargetEntry, status_code=status.HTTP_201_CREATED)
def add_target(
    kind: str,
    payload: TargetCreate,
    registry: TargetRegistry = Depends(get_target_registry),
) -> TargetEntry:
    try:
        return registry.add(kind, payload.name, host=payload.host, port=payload.port, instance_type=payload.type)
    except ReconcilerError as exc:
        raise http_error(exc) from exc


@router.delete("/{kind}/{name}", status_code=status.HTTP_204_NO_CONTENT)
def remove_target(
    kind: str,
    name: str,
    registry: TargetRegistry = Depends(get_target_registry),
) -> Response:
    try:
        registry.remove(kind, name)
    except ReconcilerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
