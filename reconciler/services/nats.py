from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from reconciler.errors import MalformedDocument, TenantNotFound, UserNotFound
from reconciler.logger import get_logger
from reconciler.schemas.tenants import Permissions, TenantLimits, TenantOut, TenantUser
from reconciler.services.reload import run_reload_command
from reconciler.services.storage import atomic_write_text, dump_json, load_json
from reconciler.utils import account_name, split_csv, url_escape

_logger = get_logger("services.nats")

_RECORD_MODE = 0o600
_SYS_PASSWORD_REF = "$NATS_SYS_PASSWORD"
_CLIENT_NAME = "infra-reconciler"
_SYS_ACCOUNT = "SYS"
_SYS_USER = "sys"


def _quote(value: str) -> str:
    return json.dumps(value)


def _subject_list(values: List[str]) -> str:
    return "[" + ", ".join(_quote(item) for item in values) + "]"


def render_auth_conf(records: List[Dict[str, Any]], *, sys_password: str = "") -> str:
    """Render the accounts block the NATS server includes as ``auth.conf``."""
    sys_value = _quote(sys_password) if sys_password else _SYS_PASSWORD_REF
    lines = [
        "# NATS authentication configuration",
        "# AUTO-GENERATED by infra-reconciler; edits are overwritten.",
        "",
        "accounts {",
        f"    {_SYS_ACCOUNT}: {{",
        "        users: [",
        "            {",
        f"                user: {_quote(_SYS_USER)}",
        f"                password: {sys_value}",
        "            }",
        "        ]",
        "    }",
    ]
    for record in records:
        limits = record.get("limits") or {}
        lines.append("")
        lines.append(f"    # --- tenant: {record['tenant']} ---")
        lines.append(f"    {record['account']}: {{")
        lines.append("        users: [")
        for user in record.get("users", []):
            lines.append("            {")
            lines.append(f"                user: {_quote(user['user'])}")
            lines.append(f"                password: {_quote(user['password'])}")
            permissions = user.get("permissions")
            if permissions is not None:
                publish = permissions.get("publish") or []
                subscribe = permissions.get("subscribe") or []
                lines.append("                permissions: {")
                if publish:
                    lines.append(f"                    publish: {{ allow: {_subject_list(publish)} }}")
                else:
                    lines.append('                    publish: { deny: [">"] }')
                if subscribe:
                    lines.append(f"                    subscribe: {{ allow: {_subject_list(subscribe)} }}")
                else:
                    lines.append('                    subscribe: { deny: [">"] }')
                lines.append("                }")
            lines.append("            }")
        lines.append("        ]")
        lines.append("        jetstream: {")
        lines.append(f"            max_memory: {limits.get('max_memory', '64MB')}")
        lines.append(f"            max_store: {limits.get('max_store', '5GB')}")
        lines.append(f"            max_streams: {int(limits.get('max_streams', 50))}")
        lines.append(f"            max_consumers: {int(limits.get('max_consumers', 500))}")
        lines.append("        }")
        lines.append("    }")
    lines.extend(["}", "", "system_account: SYS", ""])
    return "\n".join(lines)


def _display(values: List[str]) -> str:
    return ",".join(values) if values else "none"


class NatsBackend:
    """Account-per-tenant NATS backend.

    Each tenant is kept as a JSON record under ``{config_dir}/tenants``;
    ``auth.conf`` is always rebuilt from the full set of records.
    """

    name = "nats"
    env_prefix = "NATS"
    tenant_key = "TENANT"
    permission_keys = ("PUBLISH", "SUBSCRIBE")

    def __init__(
        self,
        config_dir: Path,
        *,
        host: str = "localhost",
        port: int = 4222,
        sys_password: str = "",
        reload_command: str = "",
        reload_timeout_seconds: float = 30.0,
        connect_timeout_seconds: float = 5.0,
    ) -> None:
        self.config_dir = config_dir
        self.tenants_dir = config_dir / "tenants"
        self.auth_conf = config_dir / "auth.conf"
        self.host = host
        self.port = port
        self.sys_password = sys_password
        self.reload_command = reload_command
        self.reload_timeout_seconds = reload_timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds

    def _record_path(self, tenant: str) -> Path:
        return self.tenants_dir / f"{tenant}.json"

    def _load(self, tenant: str) -> Optional[Dict[str, Any]]:
        path = self._record_path(tenant)
        record = load_json(path, default=None)
        if record is None:
            return None
        if not isinstance(record, dict) or not isinstance(record.get("users"), list):
            raise MalformedDocument(str(path), "expected a tenant record with a users list")
        return record

    def _require(self, tenant: str) -> Dict[str, Any]:
        record = self._load(tenant)
        if record is None:
            raise TenantNotFound(tenant)
        return record

    def _save(self, record: Dict[str, Any]) -> None:
        atomic_write_text(self._record_path(record["tenant"]), dump_json(record), mode=_RECORD_MODE)

    def _records(self) -> List[Dict[str, Any]]:
        if not self.tenants_dir.is_dir():
            return []
        records: List[Dict[str, Any]] = []
        for path in sorted(self.tenants_dir.glob("*.json")):
            record = self._load(path.stem)
            if record is not None:
                records.append(record)
        return records

    def admin_user(self, tenant: str) -> str:
        return tenant

    def tenant_exists(self, tenant: str) -> bool:
        return self._record_path(tenant).is_file()

    def tenant_name_taken(self, tenant: str) -> bool:
        # Account keys must be unique in auth.conf, and "my-app" and "my_app" share one.
        account = account_name(tenant)
        if account == _SYS_ACCOUNT or self.tenant_exists(tenant):
            return True
        return any(record.get("account") == account for record in self._records())

    def user_exists(self, tenant: str, user: str) -> bool:
        record = self._load(tenant)
        if record is None:
            return False
        return any(item.get("user") == user for item in record["users"])

    def username_available(self, user: str) -> bool:
        # NATS rejects a config where two accounts share a username.
        if user == _SYS_USER:
            return False
        return all(
            item.get("user") != user
            for record in self._records()
            for item in record["users"]
        )

    def resolve_permissions(self, permissions: Optional[Permissions]) -> Dict[str, str]:
        requested = permissions or Permissions()
        publish = [item for item in (requested.publish or []) if item.strip()]
        subscribe = [item for item in (requested.subscribe or []) if item.strip()] or [">"]
        return {"publish": ",".join(publish), "subscribe": ",".join(subscribe)}

    def create_tenant(self, tenant: str, admin_user: str, password: str, limits: TenantLimits) -> List[str]:
        record = {
            "tenant": tenant,
            "account": account_name(tenant),
            "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "limits": limits.model_dump(),
            "users": [{"user": admin_user, "password": password, "admin": True, "permissions": None}],
        }
        self._save(record)
        _logger.info("nats.tenant", "Wrote tenant record", tenant=tenant, account=record["account"])
        return []

    def create_user(self, tenant: str, user: str, password: str, permissions: Dict[str, str]) -> None:
        record = self._require(tenant)
        record["users"].append(
            {
                "user": user,
                "password": password,
                "admin": False,
                "permissions": {
                    "publish": split_csv(permissions.get("publish")),
                    "subscribe": split_csv(permissions.get("subscribe")),
                },
            }
        )
        self._save(record)

    def remove_user(self, tenant: str, user: str) -> None:
        record = self._require(tenant)
        kept = [item for item in record["users"] if item.get("user") != user]
        if len(kept) == len(record["users"]):
            raise UserNotFound(tenant, user)
        record["users"] = kept
        self._save(record)

    def remove_tenant(self, tenant: str) -> List[str]:
        record = self._require(tenant)
        self._record_path(tenant).unlink()
        return [item["user"] for item in record["users"]]

    def list_tenants(self) -> List[TenantOut]:
        tenants: List[TenantOut] = []
        for record in self._records():
            users: List[TenantUser] = []
            for item in record["users"]:
                permissions = item.get("permissions")
                if permissions is None:
                    users.append(TenantUser(user=item["user"], admin=bool(item.get("admin")), permissions={"access": "full"}))
                    continue
                users.append(
                    TenantUser(
                        user=item["user"],
                        admin=bool(item.get("admin")),
                        permissions={
                            "publish": _display(permissions.get("publish") or []),
                            "subscribe": _display(permissions.get("subscribe") or []),
                        },
                    )
                )
            tenants.append(TenantOut(backend=self.name, tenant=record["tenant"], users=users))
        return tenants

    def connection_uri(self, tenant: str, user: str, password: str) -> str:
        return f"nats://{url_escape(user)}:{url_escape(password)}@{self.host}:{self.port}"

    def extra_values(self, tenant: str) -> Dict[str, str]:
        return {"NATS_ACCOUNT": account_name(tenant)}

    def apply(self) -> None:
        records = self._records()
        atomic_write_text(
            self.auth_conf,
            render_auth_conf(records, sys_password=self.sys_password),
            mode=_RECORD_MODE,
        )
        _logger.info("nats.auth_conf", "Rebuilt auth.conf", path=str(self.auth_conf), tenants=len(records))
        run_reload_command("nats", self.reload_command, timeout_seconds=self.reload_timeout_seconds)

    def handshake(self, tenant: str, user: str, password: str) -> Tuple[bool, str]:
        """Authenticate with the client protocol: INFO, CONNECT, PING and expect PONG."""
        connect = {
            "verbose": False,
            "pedantic": False,
            "user": user,
            "pass": password,
            "name": _CLIENT_NAME,
            "lang": "python",
            "protocol": 1,
            "headers": False,
        }
        with socket.create_connection((self.host, self.port), timeout=self.connect_timeout_seconds) as sock:
            reader = sock.makefile("rb")
            greeting = reader.readline().decode("utf-8", "replace").strip()
            if not greeting.startswith("INFO"):
                return False, f"unexpected greeting: {greeting[:80]}"
            payload = f"CONNECT {json.dumps(connect)}\r\nPING\r\n".encode("utf-8")
            sock.sendall(payload)
            while True:
                line = reader.readline().decode("utf-8", "replace").strip()
                if not line:
                    return False, "connection closed before PONG"
                if line == "PONG":
                    return True, f"authenticated to account {account_name(tenant)} at {self.host}:{self.port}"
                if line.startswith("-ERR"):
                    return False, line[len("-ERR") :].strip().strip("'")
                # +OK and server PINGs are ignored until the PONG arrives.
                if line == "PING":
                    sock.sendall(b"PONG\r\n")
