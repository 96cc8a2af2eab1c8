from __future__ import annotations

import subprocess
from dataclasses import dataclass
from urllib import error, request

from reconciler.errors import ReloadFailed
from reconciler.logger import get_logger
from reconciler.metrics import record_reload

_logger = get_logger("services.reload")

PROMETHEUS_RESTART_HINT = "docker compose restart prometheus"


@dataclass(frozen=True)
class ReloadOutcome:
    target: str
    ok: bool
    detail: str = ""


def _trim(value: str, max_len: int = 240) -> str:
    text = value.strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def reload_prometheus(url: str, *, timeout_seconds: float) -> None:
    """POST to the Prometheus lifecycle endpoint; raises ``ReloadFailed``."""
    req = request.Request(url=url, method="POST", data=b"")
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            status = int(getattr(response, "status", 0) or 0)
    except error.HTTPError as exc:
        record_reload(target="prometheus", ok=False)
        raise ReloadFailed("prometheus", f"HTTP {exc.code} from {url}") from exc
    except (error.URLError, OSError) as exc:
        record_reload(target="prometheus", ok=False)
        raise ReloadFailed("prometheus", f"{type(exc).__name__}: {exc}") from exc
    if status < 200 or status >= 300:
        record_reload(target="prometheus", ok=False)
        raise ReloadFailed("prometheus", f"HTTP {status} from {url}")
    record_reload(target="prometheus", ok=True)
    _logger.info("reload.prometheus", "Prometheus configuration reloaded", url=url)


def run_reload_command(target: str, command: str, *, timeout_seconds: float) -> None:
    """Run a restart/reload shell command; an empty command is a no-op."""
    clean = command.strip()
    if not clean:
        _logger.debug("reload.skip", "No reload command configured", target=target)
        return
    try:
        proc = subprocess.run(
            ["sh", "-c", clean],
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        record_reload(target=target, ok=False)
        raise ReloadFailed(target, f"reload command timed out after {timeout_seconds}s") from exc
    except OSError as exc:
        record_reload(target=target, ok=False)
        raise ReloadFailed(target, f"{type(exc).__name__}: {exc}") from exc
    if proc.returncode != 0:
        record_reload(target=target, ok=False)
        raise ReloadFailed(
            target,
            f"reload command exited {proc.returncode}: {_trim(proc.stderr or proc.stdout or '')}",
        )
    record_reload(target=target, ok=True)
    _logger.info("reload.command", "Reload command succeeded", target=target, command=clean)


def notify_prometheus(url: str, *, timeout_seconds: float) -> ReloadOutcome:
    """Best-effort reload: the on-disk state is already committed."""
    try:
        reload_prometheus(url, timeout_seconds=timeout_seconds)
    except ReloadFailed as exc:
        _logger.warning(
            "reload.prometheus_failed",
            "Could not reload Prometheus; restart it manually or wait for the next re-read",
            url=url,
            detail=exc.detail,
            hint=PROMETHEUS_RESTART_HINT,
        )
        return ReloadOutcome(target="prometheus", ok=False, detail=exc.detail)
    return ReloadOutcome(target="prometheus", ok=True)
