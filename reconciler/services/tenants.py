from __future__ import annotations

from typing import Callable, Dict, List, Optional, Protocol, Tuple

from reconciler.errors import (
    BackendError,
    CannotRemoveAdmin,
    OperationCancelled,
    ReloadFailed,
    TenantAlreadyExists,
    TenantNotFound,
    UserAlreadyExists,
    UserNotFound,
)
from reconciler.logger import get_logger
from reconciler.metrics import record_operation
from reconciler.schemas.tenants import (
    ConnectionDescriptor,
    ConnectionTestResult,
    Permissions,
    TenantLimits,
    TenantOut,
)
from reconciler.services.credentials import CredentialStore
from reconciler.utils import generate_password, validate_identifier

_logger = get_logger("services.tenants")


class TenantBackend(Protocol):
    name: str
    env_prefix: str
    tenant_key: str
    permission_keys: Tuple[str, ...]

    def admin_user(self, tenant: str) -> str: ...

    def tenant_exists(self, tenant: str) -> bool: ...

    def tenant_name_taken(self, tenant: str) -> bool: ...

    def user_exists(self, tenant: str, user: str) -> bool: ...

    def username_available(self, user: str) -> bool: ...

    def resolve_permissions(self, permissions: Optional[Permissions]) -> Dict[str, str]: ...

    def create_tenant(self, tenant: str, admin_user: str, password: str, limits: TenantLimits) -> List[str]: ...

    def create_user(self, tenant: str, user: str, password: str, permissions: Dict[str, str]) -> None: ...

    def remove_user(self, tenant: str, user: str) -> None: ...

    def remove_tenant(self, tenant: str) -> List[str]: ...

    def list_tenants(self) -> List[TenantOut]: ...

    def connection_uri(self, tenant: str, user: str, password: str) -> str: ...

    def extra_values(self, tenant: str) -> Dict[str, str]: ...

    def apply(self) -> None: ...

    def handshake(self, tenant: str, user: str, password: str) -> Tuple[bool, str]: ...


class TenantManager:
    """Tenant and user lifecycle on top of a broker backend and the credential store."""

    def __init__(self, backend: TenantBackend, credentials: CredentialStore) -> None:
        self.backend = backend
        self.credentials = credentials
        self._logger = _logger.bind(backend=backend.name)

    def _key(self, suffix: str) -> str:
        return f"{self.backend.env_prefix}_{suffix}"

    def _credential_values(
        self,
        tenant: str,
        user: str,
        password: str,
        uri: str,
        permissions: Dict[str, str],
    ) -> Dict[str, str]:
        values = {
            self._key(self.backend.tenant_key): tenant,
            self._key("USER"): user,
            self._key("PASSWORD"): password,
            self._key("URL"): uri,
        }
        values.update(self.backend.extra_values(tenant))
        for key in self.backend.permission_keys:
            if key.lower() in permissions:
                values[self._key(key)] = permissions[key.lower()]
        return values

    def _apply(self) -> bool:
        try:
            self.backend.apply()
        except ReloadFailed as exc:
            self._logger.warning(
                "tenants.reload_failed",
                "Configuration written but the broker was not reloaded; run the reload command manually",
                detail=exc.detail,
            )
            return False
        return True

    def _require_tenant(self, tenant: str) -> None:
        if not self.backend.tenant_exists(tenant):
            raise TenantNotFound(tenant)

    def create_tenant(self, name: str, limits: Optional[TenantLimits] = None) -> ConnectionDescriptor:
        tenant = validate_identifier(name, entity="tenant")
        with self._logger.operation("tenants.create", "Creating tenant", tenant=tenant) as op:
            if self.backend.tenant_name_taken(tenant) or self.credentials.exists(tenant):
                record_operation(action="tenants.create", ok=False)
                raise TenantAlreadyExists(tenant)
            admin = self.backend.admin_user(tenant)
            if not self.backend.username_available(admin):
                record_operation(action="tenants.create", ok=False)
                raise UserAlreadyExists(tenant, admin)

            password = generate_password()
            topology = self.backend.create_tenant(tenant, admin, password, limits or TenantLimits())
            op.step("backend.create", "Provisioned tenant on broker", admin=admin, topology=len(topology))

            uri = self.backend.connection_uri(tenant, admin, password)
            path = self.credentials.write(
                tenant,
                self._credential_values(tenant, admin, password, uri, {}),
                title=f"{self.backend.name} tenant: {tenant}",
            )
            reloaded = self._apply()
            record_operation(action="tenants.create", ok=True)
            return ConnectionDescriptor(
                backend=self.backend.name,
                tenant=tenant,
                user=admin,
                password=password,
                uri=uri,
                credentials_path=str(path),
                topology=topology,
                reloaded=reloaded,
            )

    def add_user(self, tenant_name: str, user_name: str, permissions: Optional[Permissions] = None) -> ConnectionDescriptor:
        tenant = validate_identifier(tenant_name, entity="tenant")
        user = validate_identifier(user_name, entity="user")
        with self._logger.operation("tenants.add_user", "Adding tenant user", tenant=tenant, user=user) as op:
            self._require_tenant(tenant)
            if (
                user == self.backend.admin_user(tenant)
                or self.backend.user_exists(tenant, user)
                or not self.backend.username_available(user)
            ):
                record_operation(action="tenants.add_user", ok=False)
                raise UserAlreadyExists(tenant, user)

            granted = self.backend.resolve_permissions(permissions)
            password = generate_password()
            self.backend.create_user(tenant, user, password, granted)
            op.step("backend.create", "Created user on broker", **granted)

            uri = self.backend.connection_uri(tenant, user, password)
            path = self.credentials.write(
                tenant,
                self._credential_values(tenant, user, password, uri, granted),
                user=user,
                title=f"{self.backend.name} user: {user} @ {tenant}",
            )
            reloaded = self._apply()
            record_operation(action="tenants.add_user", ok=True)
            return ConnectionDescriptor(
                backend=self.backend.name,
                tenant=tenant,
                user=user,
                password=password,
                uri=uri,
                credentials_path=str(path),
                permissions=granted,
                reloaded=reloaded,
            )

    def remove_user(self, tenant_name: str, user_name: str) -> bool:
        tenant = validate_identifier(tenant_name, entity="tenant")
        user = validate_identifier(user_name, entity="user")
        with self._logger.operation("tenants.remove_user", "Removing tenant user", tenant=tenant, user=user):
            self._require_tenant(tenant)
            if user == self.backend.admin_user(tenant):
                record_operation(action="tenants.remove_user", ok=False)
                raise CannotRemoveAdmin(tenant, user)
            if not self.backend.user_exists(tenant, user):
                record_operation(action="tenants.remove_user", ok=False)
                raise UserNotFound(tenant, user)

            self.backend.remove_user(tenant, user)
            self.credentials.remove(tenant, user)
            reloaded = self._apply()
            record_operation(action="tenants.remove_user", ok=True)
            return reloaded

    def remove_tenant(self, name: str, confirm: Callable[[str], bool]) -> bool:
        tenant = validate_identifier(name, entity="tenant")
        with self._logger.operation("tenants.remove", "Removing tenant", tenant=tenant) as op:
            self._require_tenant(tenant)
            prompt = (
                f"This will remove {self.backend.name} tenant '{tenant}', ALL its users "
                "and every queue, subject and binding it owns."
            )
            if not confirm(prompt):
                raise OperationCancelled(f"tenant '{tenant}'", "removal cancelled by operator")

            removed_users = self.backend.remove_tenant(tenant)
            files = self.credentials.remove_tenant(tenant, removed_users)
            op.step("cleanup", "Removed tenant state", users=len(removed_users), credential_files=files)
            reloaded = self._apply()
            record_operation(action="tenants.remove", ok=True)
            return reloaded

    def show(self, tenant_name: str, user_name: Optional[str] = None) -> ConnectionDescriptor:
        tenant = validate_identifier(tenant_name, entity="tenant")
        user = validate_identifier(user_name, entity="user") if user_name else None
        values = self.credentials.read(tenant, user)
        if values is None:
            if user:
                raise UserNotFound(tenant, user)
            raise TenantNotFound(tenant)
        permissions = {
            key.lower(): values[self._key(key)]
            for key in self.backend.permission_keys
            if self._key(key) in values
        }
        return ConnectionDescriptor(
            backend=self.backend.name,
            tenant=values.get(self._key(self.backend.tenant_key), tenant),
            user=values.get(self._key("USER"), user or ""),
            password=values.get(self._key("PASSWORD"), ""),
            uri=values.get(self._key("URL"), ""),
            credentials_path=str(self.credentials.locate(tenant, user)),
            permissions=permissions,
        )

    def list(self) -> List[TenantOut]:
        return self.backend.list_tenants()

    def test_connection(self, tenant_name: str, user_name: Optional[str] = None) -> ConnectionTestResult:
        descriptor = self.show(tenant_name, user_name)
        try:
            ok, detail = self.backend.handshake(descriptor.tenant, descriptor.user, descriptor.password)
        except (BackendError, OSError) as exc:
            ok, detail = False, str(exc)
        self._logger.info(
            "tenants.test",
            "Connection test succeeded" if ok else "Connection test failed",
            tenant=descriptor.tenant,
            user=descriptor.user,
            detail=detail,
        )
        return ConnectionTestResult(
            backend=self.backend.name,
            tenant=descriptor.tenant,
            user=descriptor.user,
            ok=ok,
            detail=detail,
        )

    def reload(self) -> bool:
        return self._apply()
