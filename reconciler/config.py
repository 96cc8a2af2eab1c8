from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TARGET_HOST = "host.docker.internal"
DEFAULT_NATS_RELOAD_COMMAND = "docker compose -f services/nats/docker-compose.yml restart nats"


class Settings(BaseSettings):
    app_name: str = Field(default="infra-reconciler")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")
    metrics_enabled: bool = Field(default=True)

    infra_root: str = Field(default=".")
    services_conf_path: str = Field(default="services.conf")
    legacy_env_path: str = Field(default="services/observability/.env")
    alert_rules_dir: str = Field(default="services/observability/config/alerting-rules")
    targets_dir: str = Field(default="services/observability/targets")
    default_target_host: str = Field(default=DEFAULT_TARGET_HOST)

    prometheus_reload_url: str = Field(default="http://localhost:9090/-/reload")
    reload_timeout_seconds: float = Field(default=5.0)

    nats_config_dir: str = Field(default="services/nats/config")
    nats_credentials_dir: str = Field(default="services/nats/.credentials")
    nats_host: str = Field(default="localhost")
    nats_port: int = Field(default=4222)
    nats_reload_command: str = Field(default=DEFAULT_NATS_RELOAD_COMMAND)
    nats_reload_timeout_seconds: float = Field(default=30.0)
    nats_sys_password: str = Field(default="")

    rabbitmq_api_url: str = Field(default="http://localhost:15672/api")
    rabbitmq_admin_user: str = Field(default="admin")
    rabbitmq_admin_pass: str = Field(default="")
    rabbitmq_host: str = Field(default="localhost")
    rabbitmq_port: int = Field(default=5672)
    rabbitmq_credentials_dir: str = Field(default="services/rabbitmq/.credentials")
    rabbitmq_api_timeout_seconds: float = Field(default=10.0)

    auth_password_file: str = Field(default=".password_hash")
    auth_required: bool = Field(default=True)

    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8020)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        issues: list[str] = []
        for name in ("reload_timeout_seconds", "nats_reload_timeout_seconds", "rabbitmq_api_timeout_seconds"):
            if getattr(self, name) <= 0:
                issues.append(f"{name.upper()} must be greater than zero.")
        for name in ("nats_port", "rabbitmq_port", "server_port"):
            value = getattr(self, name)
            if value < 1 or value > 65535:
                issues.append(f"{name.upper()} must be between 1 and 65535.")
        if issues:
            raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
