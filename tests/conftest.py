"""Pytest configuration for the reconciler test suite."""

import os
from pathlib import Path
from typing import Iterator

import pytest

from reconciler.config import Settings, get_settings
from reconciler.services.alerts import AlertCategory

# Nothing listens on the discard port, so reload calls fail fast.
UNREACHABLE_RELOAD_URL = "http://127.0.0.1:9/-/reload"


def _ensure_test_env() -> None:
    """Seed settings so importing the app never prompts or reloads anything."""
    os.environ.setdefault("AUTH_REQUIRED", "false")
    os.environ.setdefault("NATS_RELOAD_COMMAND", "")
    os.environ.setdefault("PROMETHEUS_RELOAD_URL", UNREACHABLE_RELOAD_URL)
    os.environ.setdefault("RELOAD_TIMEOUT_SECONDS", "0.5")
    os.environ.setdefault("LOG_LEVEL", "WARNING")


_ensure_test_env()

RULE_FILE_BODY = """groups:
  - name: sample
    rules:
      - alert: SampleDown
        expr: up == 0
"""


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        infra_root=str(tmp_path),
        auth_required=False,
        nats_reload_command="",
        prometheus_reload_url=UNREACHABLE_RELOAD_URL,
        reload_timeout_seconds=0.5,
        nats_port=9,
        rabbitmq_api_url="http://127.0.0.1:9/api",
        rabbitmq_api_timeout_seconds=0.5,
        log_level="WARNING",
    )


@pytest.fixture
def rules_dir(tmp_path: Path) -> Path:
    """An alerting-rules directory with every known category enabled."""
    path = tmp_path / "services" / "observability" / "config" / "alerting-rules"
    path.mkdir(parents=True)
    for category in AlertCategory:
        (path / category.value).write_text(RULE_FILE_BODY, encoding="utf-8")
    return path


@pytest.fixture
def services_conf(tmp_path: Path) -> Path:
    path = tmp_path / "services.conf"
    path.write_text("# declared services\npostgres=true\nredis=false\nnats=true\n", encoding="utf-8")
    return path
