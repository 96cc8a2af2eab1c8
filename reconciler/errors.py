from __future__ import annotations

from typing import Iterable, Sequence


class ReconcilerError(RuntimeError):
    """Base for every failure the reconciler reports to an operator."""

    def __init__(self, entity: str, detail: str) -> None:
        super().__init__(f"{entity}: {detail}")
        self.entity = entity
        self.detail = detail


class ValidationError(ReconcilerError):
    pass


class InvalidName(ValidationError):
    pass


class MissingName(ValidationError):
    def __init__(self, entity: str) -> None:
        super().__init__(entity, "a non-empty name is required")


class InvalidTarget(ValidationError):
    pass


class ConflictError(ReconcilerError):
    pass


class DuplicateTarget(ConflictError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"target '{name}'", f"already registered for kind '{kind}'")
        self.kind = kind
        self.name = name


class TenantAlreadyExists(ConflictError):
    def __init__(self, tenant: str) -> None:
        super().__init__(f"tenant '{tenant}'", "already exists")
        self.tenant = tenant


class UserAlreadyExists(ConflictError):
    def __init__(self, tenant: str, user: str) -> None:
        super().__init__(f"user '{user}'", f"already exists (tenant '{tenant}')")
        self.tenant = tenant
        self.user = user


class NotFoundError(ReconcilerError):
    pass


class TargetNotFound(NotFoundError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"target '{name}'", f"not registered for kind '{kind}'")
        self.kind = kind
        self.name = name


class TenantNotFound(NotFoundError):
    def __init__(self, tenant: str) -> None:
        super().__init__(f"tenant '{tenant}'", "does not exist")
        self.tenant = tenant


class UserNotFound(NotFoundError):
    def __init__(self, tenant: str, user: str) -> None:
        super().__init__(f"user '{user}'", f"does not exist in tenant '{tenant}'")
        self.tenant = tenant
        self.user = user


class _UnknownChoice(NotFoundError):
    label = "value"

    def __init__(self, value: str, valid: Iterable[str]) -> None:
        self.value = value
        self.valid: Sequence[str] = sorted(set(valid))
        super().__init__(
            f"{self.label} '{value}'",
            "is not known; valid values: " + ", ".join(self.valid),
        )


class UnknownKind(_UnknownChoice):
    label = "target kind"


class UnknownCategory(_UnknownChoice):
    label = "alert category"


class AlertFileMissing(NotFoundError):
    def __init__(self, file_name: str) -> None:
        super().__init__(f"alert file '{file_name}'", "not found in either enabled or disabled form")
        self.file_name = file_name


class DeclarationStoreMissing(NotFoundError):
    def __init__(self, path: str) -> None:
        super().__init__("declaration store", f"not found at {path}")
        self.path = path


class CannotRemoveAdmin(ReconcilerError):
    def __init__(self, tenant: str, user: str) -> None:
        super().__init__(
            f"user '{user}'",
            f"is the admin account of tenant '{tenant}'; remove the tenant instead",
        )
        self.tenant = tenant
        self.user = user


class MalformedDocument(ReconcilerError):
    pass


class ReloadFailed(ReconcilerError):
    pass


class BackendError(ReconcilerError):
    pass


class BackendUnreachable(BackendError):
    pass


class OperationCancelled(ReconcilerError):
    pass


class AuthenticationFailed(ReconcilerError):
    pass
