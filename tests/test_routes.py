from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from reconciler.config import Settings, get_settings
from reconciler.dependencies import infra_path
from reconciler.main import app
from reconciler.services import auth as auth_service


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health_and_metrics(client: TestClient) -> None:
    assert client.get("/health").json()["status"] == "ok"

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "reconciler_operations_total" in response.text


def test_target_crud(client: TestClient, tmp_path: Path) -> None:
    created = client.post("/targets/postgres", json={"name": "db1", "host": "10.0.0.1", "type": "primary"})
    assert created.status_code == 201
    assert created.json()["targets"] == ["10.0.0.1:9187"]

    assert client.post("/targets/postgres", json={"name": "db1"}).status_code == 409

    listed = client.get("/targets/pg").json()
    assert listed["file"] == "postgres.json"
    assert [entry["labels"]["name"] for entry in listed["targets"]] == ["db1"]

    assert client.delete("/targets/postgres/db1").status_code == 204
    assert client.delete("/targets/postgres/db1").status_code == 404
    assert client.get("/targets/cassandra").status_code == 404
    assert client.post("/targets/redis", json={"name": "cache", "port": 0}).status_code == 400


def test_alert_routes(client: TestClient, rules_dir: Path, services_conf: Path) -> None:
    synced = client.post("/alerts/sync", params={"reload": "false"})
    assert synced.status_code == 200
    assert synced.json()["reloaded"] is None

    states = {row["file"]: row["state"] for row in client.get("/alerts").json()}
    assert states["05-redis.yml"] == "disabled"
    assert states["06-nats.yml"] == "enabled"

    enabled = client.post("/alerts/redis/enable")
    assert enabled.status_code == 200
    assert enabled.json()["state"] == "enabled"
    assert enabled.json()["reloaded"] is False

    assert client.post("/alerts/elasticsearch/disable").status_code == 404


def test_alert_sync_without_declarations(client: TestClient, rules_dir: Path) -> None:
    assert client.post("/alerts/sync", params={"reload": "false"}).status_code == 404


def test_nats_tenant_routes(client: TestClient) -> None:
    created = client.post("/tenants/nats", json={"name": "myapp"})
    assert created.status_code == 201
    assert created.json()["user"] == "myapp"

    assert client.post("/tenants/nats", json={"name": "myapp"}).status_code == 409

    user = client.post("/tenants/nats/myapp/users", json={"user": "worker", "permissions": {"publish": ["jobs.>"]}})
    assert user.status_code == 201
    assert user.json()["permissions"] == {"publish": "jobs.>", "subscribe": ">"}

    assert client.get("/tenants/nats/myapp", params={"user": "worker"}).json()["user"] == "worker"
    assert client.delete("/tenants/nats/myapp/users/myapp").status_code == 403
    assert client.delete("/tenants/nats/myapp/users/worker").status_code == 200
    assert [tenant["tenant"] for tenant in client.get("/tenants/nats").json()] == ["myapp"]
    assert client.delete("/tenants/nats/myapp").status_code in {404, 405}
    assert client.get("/tenants/kafka").status_code == 404


def test_nats_reload_reports_malformed_record(client: TestClient, settings: Settings) -> None:
    tenants_dir = infra_path(settings, settings.nats_config_dir) / "tenants"
    tenants_dir.mkdir(parents=True)
    (tenants_dir / "broken.json").write_text('{"tenant": "broken"}', encoding="utf-8")

    response = client.post("/tenants/nats/reload")

    assert response.status_code == 500
    assert "users list" in response.json()["detail"]


def test_rabbitmq_unreachable_maps_to_503(client: TestClient) -> None:
    assert client.get("/tenants/rabbitmq").status_code == 503


def test_basic_auth_guard(settings: Settings) -> None:
    guarded = settings.model_copy(update={"auth_required": True})
    app.dependency_overrides[get_settings] = lambda: guarded
    try:
        client = TestClient(app)
        unconfigured = client.get("/targets")
        assert unconfigured.status_code == 401

        auth_service.set_password(infra_path(guarded, guarded.auth_password_file), "operator-pass")

        assert client.get("/targets", auth=("operator", "wrong-pass")).status_code == 401
        assert client.get("/targets", auth=("operator", "operator-pass")).status_code == 200
        assert client.get("/health").status_code == 200
    finally:
        app.dependency_overrides.clear()
