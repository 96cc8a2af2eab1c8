from __future__ import annotations

import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from reconciler.errors import MalformedDocument


def resolve_path(raw: str | Path, *, root: str | Path | None = None) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        base = Path(root).expanduser() if root else Path.cwd()
        path = base / path
    return path


def _default_mode(path: Path) -> int:
    if path.exists():
        return stat.S_IMODE(path.stat().st_mode)
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def atomic_write_text(path: Path, data: str, *, mode: Optional[int] = None) -> None:
    """Replace ``path`` with ``data`` so readers only see the old or new file.

    Without ``mode`` the existing file's permissions are kept, or the umask
    default is used for a new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    target_mode = mode if mode is not None else _default_mode(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, target_mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def dump_json(document: Any) -> str:
    return json.dumps(document, indent=2) + "\n"


def load_json(path: Path, *, default: Any) -> Any:
    if not path.exists():
        return default
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedDocument(str(path), f"invalid JSON at line {exc.lineno}: {exc.msg}") from exc


def parse_env_lines(raw: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines, skipping blanks and ``#`` comments."""
    values: Dict[str, str] = {}
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def render_env_lines(values: Dict[str, str], *, header: list[str]) -> str:
    lines = [f"# {item}" for item in header]
    lines.extend(f"{key}={value}" for key, value in values.items())
    return "\n".join(lines) + "\n"
