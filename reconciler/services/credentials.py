from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from reconciler.logger import get_logger
from reconciler.services.storage import atomic_write_text, parse_env_lines, render_env_lines

_logger = get_logger("services.credentials")

_DIR_MODE = 0o700
_FILE_MODE = 0o600


class CredentialStore:
    """One ``KEY=value`` file per tenant admin and per scoped user, owner-only.

    Names cannot contain dots, so ``{tenant}.{user}.env`` never collides with
    another tenant's files. Scoped-user files written by the older shell
    tooling as ``{tenant}_{user}.env`` are still read and removed.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        os.chmod(self.root, _DIR_MODE)

    def path_for(self, tenant: str, user: Optional[str] = None) -> Path:
        if user:
            return self.root / f"{tenant}.{user}.env"
        return self.root / f"{tenant}.env"

    def legacy_path_for(self, tenant: str, user: str) -> Path:
        return self.root / f"{tenant}_{user}.env"

    def locate(self, tenant: str, user: Optional[str] = None) -> Path:
        """Return the file holding these credentials, preferring the current name."""
        path = self.path_for(tenant, user)
        if user and not path.is_file():
            legacy = self.legacy_path_for(tenant, user)
            if legacy.is_file():
                return legacy
        return path

    def exists(self, tenant: str, user: Optional[str] = None) -> bool:
        return self.locate(tenant, user).is_file()

    def write(self, tenant: str, values: Dict[str, str], *, user: Optional[str] = None, title: str) -> Path:
        self.ensure_root()
        path = self.path_for(tenant, user)
        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        atomic_write_text(
            path,
            render_env_lines(values, header=[title, f"Created: {created}"]),
            mode=_FILE_MODE,
        )
        _logger.info("credentials.write", "Saved credentials", tenant=tenant, user=user or "", path=str(path))
        return path

    def read(self, tenant: str, user: Optional[str] = None) -> Optional[Dict[str, str]]:
        path = self.locate(tenant, user)
        if not path.is_file():
            return None
        return parse_env_lines(path.read_text(encoding="utf-8"))

    def remove(self, tenant: str, user: Optional[str] = None) -> bool:
        paths = [self.path_for(tenant, user)]
        if user:
            paths.append(self.legacy_path_for(tenant, user))
        removed = False
        for path in paths:
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            _logger.info("credentials.remove", "Removed credentials", tenant=tenant, user=user or "")
        return removed

    def tenant_files(self, tenant: str, users: Iterable[str] = ()) -> List[Path]:
        if not self.root.is_dir():
            return []
        files = [self.path_for(tenant)]
        files.extend(sorted(self.root.glob(f"{tenant}.*.env")))
        files.extend(self.legacy_path_for(tenant, user) for user in users)
        return [item for item in files if item.is_file()]

    def remove_tenant(self, tenant: str, users: Iterable[str] = ()) -> int:
        removed = 0
        for path in self.tenant_files(tenant, users):
            path.unlink()
            removed += 1
        _logger.info("credentials.remove_tenant", "Removed tenant credentials", tenant=tenant, files=removed)
        return removed
