from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from reconciler.config import Settings, get_settings
from reconciler.dependencies import (
    BACKEND_BUILDERS,
    build_alert_catalog,
    build_target_registry,
    build_tenant_manager,
    infra_path,
)
from reconciler.errors import OperationCancelled, ValidationError
from reconciler.logger import configure_logging
from reconciler.schemas.alerts import AlertChange, SyncReport
from reconciler.schemas.tenants import ConnectionDescriptor, Permissions, TenantLimits
from reconciler.services import auth as auth_service
from reconciler.services.alerts import sync_from_store
from reconciler.services.declarations import load_env_file
from reconciler.services.reload import notify_prometheus, reload_prometheus
from reconciler.services.tenants import TenantManager
from reconciler.utils import split_csv

_RULE = "-" * 68


def _settings(args: argparse.Namespace) -> Settings:
    if getattr(args, "env_file", None):
        return Settings(_env_file=args.env_file)
    return get_settings()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _authorize(settings: Settings) -> None:
    if not settings.auth_required:
        return
    auth_service.require_operator(infra_path(settings, settings.auth_password_file), getpass.getpass)


def _confirm(prompt: str) -> bool:
    print(f"WARNING: {prompt}", file=sys.stderr)
    answer = input("Are you sure? (yes/no): ")
    return answer.strip().lower() in {"y", "yes"}


def _notify(settings: Settings, args: argparse.Namespace) -> Optional[bool]:
    if getattr(args, "no_reload", False):
        return None
    outcome = notify_prometheus(settings.prometheus_reload_url, timeout_seconds=settings.reload_timeout_seconds)
    return outcome.ok


def _print_changes(changes: List[AlertChange], *, quiet: bool = False) -> None:
    if quiet:
        return
    for change in changes:
        marker = "=" if change.action == "unchanged" else ("+" if change.state == "enabled" else "-")
        print(f"  {marker} {change.file}\t{change.state}\t({change.reason})")


def _print_report(report: SyncReport, *, quiet: bool = False) -> None:
    _print_changes(report.changes, quiet=quiet)
    if quiet:
        return
    print(f"enabled: {report.enabled_count}  disabled: {report.disabled_count}")
    if report.reloaded is False:
        print("warning: Prometheus was not reloaded; run 'infra-reconciler reload' or restart it", file=sys.stderr)


def _print_descriptor(descriptor: ConnectionDescriptor) -> None:
    print(_RULE)
    print(f"  {descriptor.backend} connection details")
    print(_RULE)
    print(f"  Tenant:      {descriptor.tenant}")
    print(f"  User:        {descriptor.user}")
    print(f"  Password:    {descriptor.password}")
    print(f"  URL:         {descriptor.masked_uri()}")
    for key, value in descriptor.permissions.items():
        print(f"  {key.capitalize() + ':':<12} {value or '(none)'}")
    for item in descriptor.topology:
        print(f"  Created:     {item}")
    print(f"  Credentials: {descriptor.credentials_path}")
    print(_RULE)
    if not descriptor.reloaded:
        print(
            f"warning: {descriptor.backend} was not reloaded; run 'infra-reconciler {descriptor.backend} reload'",
            file=sys.stderr,
        )


def _add_target_name(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("target_name", nargs="?", metavar="name")
    parser.add_argument("--name", dest="name_option", help="Target name (same as the positional form)")


def _target_name(args: argparse.Namespace) -> Optional[str]:
    return args.name_option or args.target_name


def cmd_targets_add(args: argparse.Namespace) -> int:
    registry = build_target_registry(_settings(args))
    name = _target_name(args)
    entry = registry.add(args.kind, name, host=args.host, port=args.port, instance_type=args.type)
    print(f"added {args.kind} target '{name}' -> {', '.join(entry.targets)}")
    return 0


def cmd_targets_remove(args: argparse.Namespace) -> int:
    registry = build_target_registry(_settings(args))
    name = _target_name(args)
    registry.remove(args.kind, name)
    print(f"removed {args.kind} target '{name}'")
    return 0


def cmd_targets_list(args: argparse.Namespace) -> int:
    registry = build_target_registry(_settings(args))
    entries = list(registry.list(args.kind))
    if args.json:
        _print_json([entry.model_dump() for entry in entries])
        return 0
    if not entries:
        print(f"no {args.kind} targets registered")
        return 0
    print("TARGET\tLABELS")
    for entry in entries:
        labels = ",".join(f"{key}={value}" for key, value in sorted(entry.labels.items()))
        print(f"{','.join(entry.targets)}\t{labels}")
    return 0


def cmd_targets_list_all(args: argparse.Namespace) -> int:
    registry = build_target_registry(_settings(args))
    print("KIND\tTARGET\tLABELS")
    for kind, entries in registry.list_all():
        for entry in entries:
            labels = ",".join(f"{key}={value}" for key, value in sorted(entry.labels.items()))
            print(f"{kind.value}\t{','.join(entry.targets)}\t{labels}")
    return 0


def cmd_alerts_list(args: argparse.Namespace) -> int:
    catalog = build_alert_catalog(_settings(args))
    rows = catalog.status()
    if args.json:
        _print_json([row.model_dump() for row in rows])
        return 0
    print("FILE\tSTATE\tRULES\tNOTES")
    for row in rows:
        notes: List[str] = []
        if row.core:
            notes.append("core")
        if row.requires_instrumentation:
            notes.append("requires instrumentation")
        if row.source_services:
            notes.append("services: " + ",".join(row.source_services))
        rules = "-" if row.rule_count is None else str(row.rule_count)
        print(f"{row.file}\t{row.state}\t{rules}\t{'; '.join(notes)}")
    return 0


def cmd_alerts_sync(args: argparse.Namespace) -> int:
    settings = _settings(args)
    report = sync_from_store(
        build_alert_catalog(settings),
        infra_path(settings, settings.services_conf_path),
        reload_url=settings.prometheus_reload_url,
        timeout_seconds=settings.reload_timeout_seconds,
        reload=not (args.no_reload or args.quiet),
    )
    _print_report(report, quiet=args.quiet)
    return 0


def _toggle(args: argparse.Namespace, *, enabled: bool) -> int:
    settings = _settings(args)
    catalog = build_alert_catalog(settings)
    change = catalog.enable(args.category) if enabled else catalog.disable(args.category)
    _print_changes([change])
    if change.action != "unchanged" and _notify(settings, args) is False:
        print("warning: Prometheus was not reloaded", file=sys.stderr)
    return 0


def cmd_alerts_enable(args: argparse.Namespace) -> int:
    return _toggle(args, enabled=True)


def cmd_alerts_disable(args: argparse.Namespace) -> int:
    return _toggle(args, enabled=False)


def _apply_all(args: argparse.Namespace, *, enabled: bool) -> int:
    settings = _settings(args)
    catalog = build_alert_catalog(settings)
    report = catalog.enable_all() if enabled else catalog.disable_all()
    report.reloaded = _notify(settings, args)
    _print_report(report)
    return 0


def cmd_alerts_enable_all(args: argparse.Namespace) -> int:
    return _apply_all(args, enabled=True)


def cmd_alerts_disable_all(args: argparse.Namespace) -> int:
    return _apply_all(args, enabled=False)


def cmd_alerts_apply(args: argparse.Namespace) -> int:
    settings = _settings(args)
    env = load_env_file(infra_path(settings, args.from_file or settings.legacy_env_path))
    env.update({key: value for key, value in os.environ.items() if key.startswith("ALERTS_")})
    report = build_alert_catalog(settings).apply_env(env)
    report.reloaded = _notify(settings, args)
    _print_report(report)
    return 0


def cmd_reload(args: argparse.Namespace) -> int:
    settings = _settings(args)
    reload_prometheus(settings.prometheus_reload_url, timeout_seconds=settings.reload_timeout_seconds)
    print("Prometheus configuration reloaded")
    return 0


def cmd_set_password(args: argparse.Namespace) -> int:
    settings = _settings(args)
    path = infra_path(settings, settings.auth_password_file)
    if auth_service.is_configured(path):
        auth_service.require_operator(path, lambda _: getpass.getpass("Enter current password: "))
    first = getpass.getpass("Enter new password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        raise ValidationError("operator password", "passwords do not match")
    auth_service.set_password(path, first)
    print(f"Password set ({path})")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    settings = _settings(args)
    uvicorn.run(
        "reconciler.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def _manager(args: argparse.Namespace) -> TenantManager:
    return build_tenant_manager(_settings(args), args.backend)


def _permissions(args: argparse.Namespace) -> Optional[Permissions]:
    if args.backend == "nats":
        publish = split_csv(args.publish) if args.publish is not None else None
        subscribe = split_csv(args.subscribe) if args.subscribe is not None else None
        return Permissions(publish=publish, subscribe=subscribe)
    return Permissions(configure=args.configure, write=args.write, read=args.read, tags=args.tags)


def _limits(args: argparse.Namespace) -> Optional[TenantLimits]:
    if args.backend != "nats":
        return None
    overrides: Dict[str, Any] = {
        key: getattr(args, key)
        for key in ("max_memory", "max_store", "max_streams", "max_consumers")
        if getattr(args, key) is not None
    }
    return TenantLimits(**overrides)


def cmd_tenant_add(args: argparse.Namespace) -> int:
    _print_descriptor(_manager(args).create_tenant(args.tenant, _limits(args)))
    return 0


def cmd_tenant_add_user(args: argparse.Namespace) -> int:
    _print_descriptor(_manager(args).add_user(args.tenant, args.user, _permissions(args)))
    return 0


def cmd_tenant_remove_user(args: argparse.Namespace) -> int:
    reloaded = _manager(args).remove_user(args.tenant, args.user)
    print(f"removed user '{args.user}' from {args.backend} tenant '{args.tenant}'")
    if not reloaded:
        print(f"warning: {args.backend} was not reloaded", file=sys.stderr)
    return 0


def cmd_tenant_remove(args: argparse.Namespace) -> int:
    reloaded = _manager(args).remove_tenant(args.tenant, _confirm)
    print(f"removed {args.backend} tenant '{args.tenant}'")
    if not reloaded:
        print(f"warning: {args.backend} was not reloaded", file=sys.stderr)
    return 0


def cmd_tenant_list(args: argparse.Namespace) -> int:
    tenants = _manager(args).list()
    if args.json:
        _print_json([tenant.model_dump() for tenant in tenants])
        return 0
    if not tenants:
        print(f"no {args.backend} tenants configured")
        return 0
    for tenant in tenants:
        print(tenant.tenant)
        for user in tenant.users:
            grants = ", ".join(f"{key}: {value or 'none'}" for key, value in user.permissions.items())
            role = " [admin]" if user.admin else ""
            print(f"  - {user.user}{role} ({grants})")
    return 0


def cmd_tenant_show(args: argparse.Namespace) -> int:
    descriptor = _manager(args).show(args.tenant, args.user)
    descriptor.reloaded = True
    _print_descriptor(descriptor)
    return 0


def cmd_tenant_test(args: argparse.Namespace) -> int:
    result = _manager(args).test_connection(args.tenant, args.user)
    status = "OK" if result.ok else "FAILED"
    print(f"{result.backend} {result.tenant}/{result.user}: {status} ({result.detail})")
    return 0 if result.ok else 1


def cmd_tenant_reload(args: argparse.Namespace) -> int:
    if not _manager(args).reload():
        print(f"error: {args.backend} reload failed", file=sys.stderr)
        return 1
    print(f"{args.backend} reloaded")
    return 0


def _add_tenant_commands(sub: Any, backend: str) -> None:
    parser = sub.add_parser(backend, help=f"Manage {backend} tenants and users")
    parser.set_defaults(backend=backend)
    tenant_sub = parser.add_subparsers(dest="action", required=True)
    tenant_label = "vhost" if backend == "rabbitmq" else "tenant"

    add_tenant = tenant_sub.add_parser("add-tenant", help=f"Create a {tenant_label} with an admin user")
    add_tenant.add_argument("tenant")
    if backend == "nats":
        add_tenant.add_argument("--max-memory")
        add_tenant.add_argument("--max-store")
        add_tenant.add_argument("--max-streams", type=int)
        add_tenant.add_argument("--max-consumers", type=int)
    add_tenant.set_defaults(func=cmd_tenant_add, protected=True)

    add_user = tenant_sub.add_parser("add-user", help=f"Add a scoped user to a {tenant_label}")
    add_user.add_argument("tenant")
    add_user.add_argument("user")
    if backend == "nats":
        add_user.add_argument("--publish", help="Comma-separated subjects the user may publish to")
        add_user.add_argument("--subscribe", help="Comma-separated subjects the user may subscribe to")
    else:
        add_user.add_argument("--configure", help="Configure permission regex")
        add_user.add_argument("--write", help="Write permission regex")
        add_user.add_argument("--read", help="Read permission regex")
        add_user.add_argument("--tags", help="Comma-separated user tags, e.g. management")
    add_user.set_defaults(func=cmd_tenant_add_user, protected=True)

    remove_user = tenant_sub.add_parser("remove-user", help=f"Remove a user from a {tenant_label}")
    remove_user.add_argument("tenant")
    remove_user.add_argument("user")
    remove_user.set_defaults(func=cmd_tenant_remove_user, protected=True)

    remove_tenant = tenant_sub.add_parser("remove-tenant", help=f"Remove a {tenant_label} and all its users")
    remove_tenant.add_argument("tenant")
    remove_tenant.set_defaults(func=cmd_tenant_remove, protected=True)

    list_cmd = tenant_sub.add_parser("list", help=f"List {tenant_label}s and users")
    list_cmd.add_argument("--json", action="store_true")
    list_cmd.set_defaults(func=cmd_tenant_list)

    show = tenant_sub.add_parser("show", help="Show stored connection details")
    show.add_argument("tenant")
    show.add_argument("user", nargs="?")
    show.set_defaults(func=cmd_tenant_show, protected=True)

    test = tenant_sub.add_parser("test", help="Authenticate against the broker with stored credentials")
    test.add_argument("tenant")
    test.add_argument("user", nargs="?")
    test.set_defaults(func=cmd_tenant_test)

    reload = tenant_sub.add_parser("reload", help=f"Regenerate config and reload {backend}")
    reload.set_defaults(func=cmd_tenant_reload, protected=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infra-reconciler",
        description="Reconcile monitoring targets, alert rules and broker tenants",
    )
    parser.add_argument("--env-file", help="Read settings from this .env file")

    sub = parser.add_subparsers(dest="command", required=True)

    targets = sub.add_parser("targets", help="Manage Prometheus file_sd scrape targets")
    targets_sub = targets.add_subparsers(dest="action", required=True)

    targets_add = targets_sub.add_parser("add", help="Register a scrape target")
    targets_add.add_argument("kind")
    _add_target_name(targets_add)
    targets_add.add_argument("--host")
    targets_add.add_argument("--port", type=int)
    targets_add.add_argument("--type", help="Optional instance_type label")
    targets_add.set_defaults(func=cmd_targets_add, protected=True)

    targets_remove = targets_sub.add_parser("remove", help="Remove a scrape target")
    targets_remove.add_argument("kind")
    _add_target_name(targets_remove)
    targets_remove.set_defaults(func=cmd_targets_remove, protected=True)

    targets_list = targets_sub.add_parser("list", help="List targets of one kind")
    targets_list.add_argument("kind")
    targets_list.add_argument("--json", action="store_true")
    targets_list.set_defaults(func=cmd_targets_list)

    targets_list_all = targets_sub.add_parser("list-all", help="List targets of every kind")
    targets_list_all.set_defaults(func=cmd_targets_list_all)

    alerts = sub.add_parser("alerts", help="Enable and disable alert rule files")
    alerts_sub = alerts.add_subparsers(dest="action", required=True)

    alerts_list = alerts_sub.add_parser("list", help="Show alert rule file status")
    alerts_list.add_argument("--json", action="store_true")
    alerts_list.set_defaults(func=cmd_alerts_list)

    alerts_sync = alerts_sub.add_parser("sync", help="Match alert files to declared services")
    alerts_sync.add_argument("--quiet", action="store_true", help="Only report problems; skips the reload")
    alerts_sync.add_argument("--no-reload", action="store_true")
    alerts_sync.set_defaults(func=cmd_alerts_sync, protected=True)

    for name, func, help_text in (
        ("enable", cmd_alerts_enable, "Enable one alert category"),
        ("disable", cmd_alerts_disable, "Disable one alert category"),
    ):
        toggle = alerts_sub.add_parser(name, help=help_text)
        toggle.add_argument("category")
        toggle.add_argument("--no-reload", action="store_true")
        toggle.set_defaults(func=func, protected=True)

    for name, func, help_text in (
        ("enable-all", cmd_alerts_enable_all, "Enable every alert file on disk"),
        ("disable-all", cmd_alerts_disable_all, "Disable every alert file on disk"),
    ):
        bulk = alerts_sub.add_parser(name, help=help_text)
        bulk.add_argument("--no-reload", action="store_true")
        bulk.set_defaults(func=func, protected=True)

    alerts_apply = alerts_sub.add_parser("apply", help="Apply legacy ALERTS_* toggles from a .env file")
    alerts_apply.add_argument("--from-file", help="Env file to read (defaults to LEGACY_ENV_PATH)")
    alerts_apply.add_argument("--no-reload", action="store_true")
    alerts_apply.set_defaults(func=cmd_alerts_apply, protected=True)

    for backend in BACKEND_BUILDERS:
        _add_tenant_commands(sub, backend)

    reload = sub.add_parser("reload", help="Ask Prometheus to reload its configuration")
    reload.set_defaults(func=cmd_reload)

    set_password = sub.add_parser("set-password", help="Set or change the operator password")
    set_password.set_defaults(func=cmd_set_password)

    serve = sub.add_parser("serve", help="Run the admin HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings(args)
        configure_logging(settings.log_level, settings.log_file)
        if getattr(args, "protected", False):
            _authorize(settings)
        exit_code = args.func(args)
    except OperationCancelled as exc:
        print(f"cancelled: {exc.detail}", file=sys.stderr)
        raise SystemExit(0) from exc
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
