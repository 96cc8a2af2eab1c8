from pathlib import Path

import pytest

from reconciler.errors import AlertFileMissing, DeclarationStoreMissing, UnknownCategory
from reconciler.services.alerts import (
    CORE_ALERTS,
    AlertCatalog,
    AlertCategory,
    resolve_category,
    sync_from_store,
)
from reconciler.services.declarations import parse_declarations

UNREACHABLE_RELOAD_URL = "http://127.0.0.1:9/-/reload"


def _disable(rules_dir: Path, file_name: str) -> None:
    (rules_dir / file_name).rename(rules_dir / f"{file_name}.disabled")


def test_sync_matches_declared_services(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)

    report = catalog.sync(parse_declarations("postgres=true\nredis=false\nnats=true\n"))

    assert catalog.state_of("04-postgresql.yml") == "enabled"
    assert catalog.state_of("05-redis.yml") == "disabled"
    assert catalog.state_of("06-nats.yml") == "enabled"
    assert catalog.state_of("07-task-queue.yml") == "disabled"
    for core_file in CORE_ALERTS:
        assert catalog.state_of(core_file) == "enabled"
    assert report.enabled_count == 0
    assert report.disabled_count == len(AlertCategory) - 3 - 2

    reasons = {change.file: change.reason for change in report.changes}
    assert reasons["01-infrastructure.yml"] == "core"
    assert reasons["07-task-queue.yml"] == "requires app instrumentation"
    assert reasons["05-redis.yml"] == "service not enabled"


def test_sync_is_idempotent(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)
    declarations = parse_declarations("postgres=true\nrabbitmq=true\n")

    catalog.sync(declarations)
    snapshot = sorted(path.name for path in rules_dir.iterdir())
    second = catalog.sync(declarations)

    assert second.renames == 0
    assert all(change.action == "unchanged" for change in second.changes)
    assert sorted(path.name for path in rules_dir.iterdir()) == snapshot


def test_sync_enables_when_any_mapped_service_is_enabled(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)

    catalog.sync(parse_declarations("postgres=false\ntimescaledb=true\npostgres-ha=false\n"))

    assert catalog.state_of("04-postgresql.yml") == "enabled"


def test_sync_re_enables_disabled_core_files(rules_dir: Path) -> None:
    for core_file in CORE_ALERTS:
        _disable(rules_dir, core_file)
    catalog = AlertCatalog(rules_dir)

    report = catalog.sync([])

    for core_file in CORE_ALERTS:
        assert catalog.state_of(core_file) == "enabled"
    assert report.enabled_count == 3


def test_sync_turns_off_manually_enabled_instrumentation_alerts(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)
    catalog.enable("asynq")

    catalog.sync(parse_declarations("asynq=true\n"))

    assert catalog.state_of("07-task-queue.yml") == "disabled"


def test_sync_leaves_unknown_rule_files_disabled(rules_dir: Path) -> None:
    (rules_dir / "99-custom.yml").write_text("groups: []\n", encoding="utf-8")
    catalog = AlertCatalog(rules_dir)

    catalog.sync([])

    assert catalog.state_of("99-custom.yml") == "disabled"


def test_enable_and_disable_resolve_aliases(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)

    first = catalog.disable("pg")
    again = catalog.disable("postgres")
    restored = catalog.enable("postgresql")

    assert first.action == "disabled"
    assert again.action == "unchanged"
    assert restored.action == "enabled"
    assert (rules_dir / "04-postgresql.yml").is_file()
    assert not (rules_dir / "04-postgresql.yml.disabled").exists()


def test_unknown_category_lists_aliases() -> None:
    with pytest.raises(UnknownCategory) as exc_info:
        resolve_category("elasticsearch")

    assert "postgresql" in exc_info.value.valid
    assert "redis" in str(exc_info.value)


def test_toggle_missing_file(rules_dir: Path) -> None:
    (rules_dir / "18-minio.yml").unlink()
    catalog = AlertCatalog(rules_dir)

    with pytest.raises(AlertFileMissing):
        catalog.enable("minio")


def test_both_copies_present_is_left_alone(rules_dir: Path) -> None:
    (rules_dir / "05-redis.yml.disabled").write_text("groups: []\n", encoding="utf-8")
    catalog = AlertCatalog(rules_dir)

    change = catalog.disable("redis")

    assert change.action == "unchanged"
    assert (rules_dir / "05-redis.yml").is_file()
    assert (rules_dir / "05-redis.yml.disabled").is_file()


def test_enable_all_and_disable_all(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)

    disabled = catalog.disable_all()
    enabled = catalog.enable_all()

    assert disabled.disabled_count == len(AlertCategory)
    assert enabled.enabled_count == len(AlertCategory)


def test_apply_env_toggles(rules_dir: Path) -> None:
    catalog = AlertCatalog(rules_dir)

    report = catalog.apply_env({"ALERTS_REDIS": "false", "ALERTS_TASK_QUEUE": "false"})

    assert catalog.state_of("05-redis.yml") == "disabled"
    assert catalog.state_of("07-task-queue.yml") == "disabled"
    assert catalog.state_of("04-postgresql.yml") == "enabled"
    assert report.disabled_count == 2


def test_status_reports_rule_counts_and_flags(rules_dir: Path) -> None:
    _disable(rules_dir, "10-mongodb.yml")
    (rules_dir / "18-minio.yml").unlink()
    rows = {row.file: row for row in AlertCatalog(rules_dir).status()}

    assert rows["01-infrastructure.yml"].core is True
    assert rows["07-task-queue.yml"].requires_instrumentation is True
    assert rows["10-mongodb.yml"].state == "disabled"
    assert rows["10-mongodb.yml"].rule_count == 1
    assert rows["18-minio.yml"].state == "missing"
    assert rows["04-postgresql.yml"].source_services == ["postgres", "postgres-ha", "timescaledb"]


def test_sync_from_store_requires_declaration_store(rules_dir: Path, tmp_path: Path) -> None:
    with pytest.raises(DeclarationStoreMissing):
        sync_from_store(
            AlertCatalog(rules_dir),
            tmp_path / "missing.conf",
            reload_url=UNREACHABLE_RELOAD_URL,
            timeout_seconds=0.5,
        )


def test_sync_from_store_reports_failed_reload(rules_dir: Path, services_conf: Path) -> None:
    report = sync_from_store(
        AlertCatalog(rules_dir),
        services_conf,
        reload_url=UNREACHABLE_RELOAD_URL,
        timeout_seconds=0.5,
    )

    assert report.reloaded is False
    assert AlertCatalog(rules_dir).state_of("05-redis.yml") == "disabled"
