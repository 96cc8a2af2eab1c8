from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib import error, request

from reconciler.errors import BackendError, BackendUnreachable, TenantNotFound
from reconciler.logger import get_logger
from reconciler.schemas.tenants import Permissions, TenantLimits, TenantOut, TenantUser
from reconciler.utils import split_csv, url_escape

_logger = get_logger("services.rabbitmq")

FULL_ACCESS = {"configure": ".*", "write": ".*", "read": ".*"}
DEFAULT_USER_PERMISSIONS = {"configure": "", "write": "", "read": ".*"}
_GRANT_KEYS = ("configure", "write", "read")

# (name, exchange type) created in every new vhost.
DEFAULT_EXCHANGES: Tuple[Tuple[str, str], ...] = (
    ("events", "topic"),
    ("commands", "direct"),
    ("dlx", "direct"),
)
DLX_QUEUE = "dlx.queue"
DLX_ROUTING_KEY = "dlx"


def _error_detail(payload: str) -> str:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return payload.strip()
    if isinstance(parsed, dict):
        return str(parsed.get("reason") or parsed.get("error") or payload).strip()
    return payload.strip()


class RabbitManagementClient:
    """Minimal JSON client for the RabbitMQ management HTTP API."""

    def __init__(self, base_url: str, user: str, password: str, *, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.password = password
        self.timeout_seconds = timeout_seconds

    def with_credentials(self, user: str, password: str) -> "RabbitManagementClient":
        return RabbitManagementClient(self.base_url, user, password, timeout_seconds=self.timeout_seconds)

    def _auth_header(self) -> str:
        token = base64.b64encode(f"{self.user}:{self.password}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        url = self.base_url + path
        headers: Dict[str, str] = {"Accept": "application/json", "Authorization": self._auth_header()}
        data: Optional[bytes] = None
        if json_body is not None:
            data = json.dumps(json_body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8", "replace")
        except error.HTTPError as exc:
            if exc.code == 404 and allow_missing:
                return None
            payload = exc.read().decode("utf-8", "replace")
            raise BackendError("rabbitmq", f"{method.upper()} {path} returned HTTP {exc.code}: {_error_detail(payload)}") from exc
        except (error.URLError, OSError) as exc:
            raise BackendUnreachable("rabbitmq", f"management API unreachable at {self.base_url}: {exc}") from exc
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise BackendError("rabbitmq", f"{method.upper()} {path} returned a non-JSON body: {body.strip()[:120]}") from exc

    def get(self, path: str) -> Any:
        return self.request("GET", path, allow_missing=True)

    def put(self, path: str, body: Dict[str, Any]) -> Any:
        return self.request("PUT", path, json_body=body)

    def post(self, path: str, body: Dict[str, Any]) -> Any:
        return self.request("POST", path, json_body=body)

    def delete(self, path: str, *, allow_missing: bool = False) -> Any:
        return self.request("DELETE", path, allow_missing=allow_missing)


class RabbitMQBackend:
    """Vhost-per-tenant RabbitMQ backend driven through the management API."""

    name = "rabbitmq"
    env_prefix = "RABBITMQ"
    tenant_key = "VHOST"
    permission_keys = ("CONFIGURE", "WRITE", "READ", "TAGS")

    def __init__(self, client: RabbitManagementClient, *, host: str = "localhost", port: int = 5672) -> None:
        self.client = client
        self.host = host
        self.port = port

    @property
    def management_ui_url(self) -> str:
        base = self.client.base_url
        if base.endswith("/api"):
            base = base[: -len("/api")]
        return base

    def admin_user(self, tenant: str) -> str:
        return f"{tenant}-admin"

    def tenant_exists(self, tenant: str) -> bool:
        return self.client.get(f"/vhosts/{url_escape(tenant)}") is not None

    def tenant_name_taken(self, tenant: str) -> bool:
        return self.tenant_exists(tenant)

    def user_exists(self, tenant: str, user: str) -> bool:
        return self.client.get(f"/permissions/{url_escape(tenant)}/{url_escape(user)}") is not None

    def username_available(self, user: str) -> bool:
        return self.client.get(f"/users/{url_escape(user)}") is None

    def resolve_permissions(self, permissions: Optional[Permissions]) -> Dict[str, str]:
        requested = permissions or Permissions()
        resolved = dict(DEFAULT_USER_PERMISSIONS)
        for key in _GRANT_KEYS:
            value = getattr(requested, key)
            if value is not None:
                resolved[key] = value
        tags = ",".join(split_csv(requested.tags))
        if tags:
            resolved["tags"] = tags
        return resolved

    def create_tenant(self, tenant: str, admin_user: str, password: str, limits: TenantLimits) -> List[str]:
        vhost = url_escape(tenant)
        self.client.put(f"/vhosts/{vhost}", {"description": f"Tenant {tenant} (infra-reconciler)", "tags": "production"})
        self.client.put(f"/users/{url_escape(admin_user)}", {"password": password, "tags": "administrator"})
        self.client.put(f"/permissions/{vhost}/{url_escape(admin_user)}", dict(FULL_ACCESS))

        topology: List[str] = []
        for exchange, kind in DEFAULT_EXCHANGES:
            self.client.put(f"/exchanges/{vhost}/{exchange}", {"type": kind, "durable": True})
            topology.append(f"exchange {exchange} ({kind})")
        self.client.put(
            f"/queues/{vhost}/{DLX_QUEUE}",
            {"durable": True, "arguments": {"x-queue-type": "classic"}},
        )
        topology.append(f"queue {DLX_QUEUE}")
        self.client.post(f"/bindings/{vhost}/e/dlx/q/{DLX_QUEUE}", {"routing_key": DLX_ROUTING_KEY})
        topology.append(f"binding dlx -> {DLX_QUEUE} ({DLX_ROUTING_KEY})")
        _logger.info("rabbitmq.vhost", "Provisioned vhost", vhost=tenant, admin=admin_user, topology=len(topology))
        return topology

    def create_user(self, tenant: str, user: str, password: str, permissions: Dict[str, str]) -> None:
        self.client.put(f"/users/{url_escape(user)}", {"password": password, "tags": permissions.get("tags", "")})
        grants = {key: permissions.get(key, "") for key in _GRANT_KEYS}
        self.client.put(f"/permissions/{url_escape(tenant)}/{url_escape(user)}", grants)

    def remove_user(self, tenant: str, user: str) -> None:
        self.client.delete(f"/users/{url_escape(user)}", allow_missing=True)

    def _owned_by(self, tenant: str, user: str) -> bool:
        if user == self.client.user:
            return False
        if user.startswith(f"{tenant}-") or user.endswith(f"-{tenant}"):
            return True
        grants = self.client.get(f"/users/{url_escape(user)}/permissions") or []
        return all(item.get("vhost") == tenant for item in grants)

    def remove_tenant(self, tenant: str) -> List[str]:
        grants = self.client.get(f"/vhosts/{url_escape(tenant)}/permissions")
        if grants is None:
            raise TenantNotFound(tenant)
        owned = [item["user"] for item in grants if self._owned_by(tenant, item.get("user", ""))]
        self.client.delete(f"/vhosts/{url_escape(tenant)}")
        for user in owned:
            self.client.delete(f"/users/{url_escape(user)}", allow_missing=True)
            _logger.info("rabbitmq.user_removed", "Removed tenant user", vhost=tenant, user=user)
        return owned

    def list_tenants(self) -> List[TenantOut]:
        tenants: List[TenantOut] = []
        for vhost in self.client.get("/vhosts") or []:
            name = vhost.get("name", "")
            if not name or name == "/":
                continue
            grants = self.client.get(f"/vhosts/{url_escape(name)}/permissions") or []
            users = [
                TenantUser(
                    user=item["user"],
                    admin=item["user"] == self.admin_user(name),
                    permissions={key: str(item.get(key, "")) for key in _GRANT_KEYS},
                )
                for item in grants
            ]
            tenants.append(TenantOut(backend=self.name, tenant=name, users=users))
        return tenants

    def connection_uri(self, tenant: str, user: str, password: str) -> str:
        return f"amqp://{url_escape(user)}:{url_escape(password)}@{self.host}:{self.port}/{url_escape(tenant)}"

    def extra_values(self, tenant: str) -> Dict[str, str]:
        return {"RABBITMQ_MANAGEMENT_URL": f"{self.management_ui_url}/#/vhosts/{url_escape(tenant)}"}

    def apply(self) -> None:
        # Management API changes take effect immediately.
        return None

    def handshake(self, tenant: str, user: str, password: str) -> Tuple[bool, str]:
        account = self.client.get(f"/users/{url_escape(user)}")
        if account is None:
            return False, f"user '{user}' does not exist on the broker"
        raw_tags = account.get("tags") or ""
        tags = raw_tags if isinstance(raw_tags, list) else split_csv(str(raw_tags))
        if not tags:
            # The management API refuses logins from users without a tag.
            return False, f"user '{user}' has no management tag; re-create it with --tags management to test over the API"
        scoped = self.client.with_credentials(user, password)
        try:
            vhost = scoped.get(f"/vhosts/{url_escape(tenant)}")
        except BackendError as exc:
            return False, exc.detail
        if not vhost:
            return False, f"vhost '{tenant}' is not visible to user '{user}'"
        return True, f"user '{user}' can access vhost '{tenant}'"
