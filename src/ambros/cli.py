import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from ambros import __version__
from ambros.app_container import AppServices, build_services
from ambros.config import DEFAULT_CONFIG_DIR, load_config
from ambros.domain.chains import RESULT_FAILED, RESULT_SKIPPED
from ambros.domain.commands import MODE_CAPTURE_ECHO, MODE_CAPTURED, MODE_TRANSPARENT, CommandRecord
from ambros.errors import AmbrosError, HookDispatchError, describe_error
from ambros.observability.structured_log import configure_logging

logger = logging.getLogger(__name__)


def _strip_separator(argv: Sequence[str]) -> List[str]:
    items = list(argv)
    if items and items[0] == "--":
        items = items[1:]
    return items


def _mode_from_flags(args: argparse.Namespace) -> str:
    if getattr(args, "auto", False):
        return MODE_TRANSPARENT
    if getattr(args, "echo", False):
        return MODE_CAPTURE_ECHO
    return MODE_CAPTURED


def _print_record(record: CommandRecord, verbose: bool = False) -> None:
    status = "ok" if record.status else "failed"
    created = record.created_at.isoformat(timespec="seconds") if record.created_at else "-"
    tags = f" [{', '.join(record.tags)}]" if record.tags else ""
    print(f"{record.command_id}  {created}  {status:<6}  {record.command_text}{tags}")
    if verbose:
        if record.category:
            print(f"  category: {record.category}")
        for key, value in sorted(record.variables.items()):
            print(f"  {key}: {value}")
        if record.output:
            print("  output:")
            for line in record.output.rstrip("\n").splitlines():
                print(f"    {line}")
        if record.error:
            print(f"  error: {record.error}")


def _cmd_run(services: AppServices, args: argparse.Namespace) -> int:
    argv = _strip_separator(args.command)
    outcome = services.commands.run(
        argv,
        mode=_mode_from_flags(args),
        store=not args.no_store,
        tags=args.tag or [],
        category=args.category or "",
        dry_run=args.dry_run,
    )
    return _report_run(outcome, args)


def _cmd_rerun(services: AppServices, args: argparse.Namespace) -> int:
    outcome = services.commands.rerun(
        args.command_id,
        mode=_mode_from_flags(args),
        store=not args.no_store,
        dry_run=args.dry_run,
    )
    return _report_run(outcome, args)


def _report_run(outcome, args: argparse.Namespace) -> int:
    if outcome.dry_run:
        print(f"[dry-run] would execute: {outcome.command_text}")
        return 0
    result = outcome.result
    if result.output and not result.echoed:
        sys.stdout.write(result.output)
        if not result.output.endswith("\n"):
            sys.stdout.write("\n")
        sys.stdout.flush()
    if not result.succeeded and result.error_message:
        print(f"Error: {result.error_message}", file=sys.stderr)
    if outcome.record is not None and outcome.stored:
        logger.info("stored as %s", outcome.record.command_id)
    if getattr(args, "auto", False):
        return result.exit_code
    return 0 if result.succeeded else 1


def _cmd_store(services: AppServices, args: argparse.Namespace) -> int:
    record = services.commands.store(
        _strip_separator(args.command),
        tags=args.tag or [],
        category=args.category or "",
        description=args.description or "",
        name=args.name or "",
        force=args.force,
    )
    print(f"Stored {record.command_id}: {record.command_text}")
    return 0


def _cmd_history(services: AppServices, args: argparse.Namespace) -> int:
    if args.tag:
        records = services.commands.search_by_tag(args.tag)[: args.limit]
    else:
        records = services.commands.recent(args.limit)
    if not records:
        print("No commands found.")
        return 0
    for record in records:
        _print_record(record)
    return 0


def _cmd_show(services: AppServices, args: argparse.Namespace) -> int:
    _print_record(services.commands.get(args.command_id), verbose=True)
    return 0


def _cmd_delete(services: AppServices, args: argparse.Namespace) -> int:
    services.commands.delete(args.command_id)
    print(f"Deleted {args.command_id}")
    return 0


def _cmd_chain(services: AppServices, args: argparse.Namespace) -> int:
    chains = services.chains
    action = args.chain_action
    if action == "create":
        spec = chains.create(
            name=args.name,
            commands=args.commands,
            description=args.description or "",
            conditional=args.conditional,
            parallel=args.parallel,
            retry_limit=args.retry,
            timeout_sec=args.timeout,
        )
        print(f"Chain '{spec.name}' created with {len(spec.commands)} command(s).")
        return 0
    if action == "list":
        specs = chains.list_chains()
        if not specs:
            print("No chains defined.")
        for spec in specs:
            print(f"{spec.name}  ({spec.mode}, {len(spec.commands)} commands)  {spec.description}")
        return 0
    if action == "show":
        print(json.dumps(chains.get(args.name).to_dict(), indent=2))
        return 0
    if action == "delete":
        chains.delete(args.name)
        print(f"Chain '{args.name}' deleted.")
        return 0
    if action == "export":
        path = chains.export_chain(args.name, Path(args.file))
        print(f"Chain '{args.name}' exported to {path}")
        return 0
    if action == "import":
        spec = chains.import_chain(Path(args.file), overwrite=args.force)
        print(f"Chain '{spec.name}' imported.")
        return 0
    if action == "exec":
        if args.dry_run:
            plan = chains.plan(args.name)
            print(f"[dry-run] chain '{plan.chain_name}' ({plan.mode})")
            if plan.description:
                print(f"  {plan.description}")
            for idx, item in enumerate(plan.commands, start=1):
                shown = item.resolved_text if item.found else "<command not found>"
                print(f"  {idx}. {item.command_ref}: {shown}")
            print(
                f"  conditional={str(plan.conditional).lower()} retry={plan.retry_limit} "
                f"timeout={plan.timeout_sec:g}s"
            )
            return 0
        result = chains.execute(args.name, store=args.store)
        for item in result.results:
            print(f"[{item.status}] {item.command_ref}: {item.resolved_text}")
            if item.output:
                for line in item.output.rstrip("\n").splitlines():
                    print(f"    {line}")
            if item.status in (RESULT_FAILED, RESULT_SKIPPED) and item.error:
                print(f"    error: {item.error}", file=sys.stderr)
        print(
            f"Chain '{result.chain_name}' {result.status}: {result.success_count} succeeded, "
            f"{result.failure_count} failed, {result.skipped_count} skipped in {result.duration_sec:.2f}s"
        )
        return 0 if result.failure_count == 0 else 1
    raise AssertionError(f"unhandled chain action: {action}")


def _cmd_plugin(services: AppServices, args: argparse.Namespace) -> int:
    lifecycle = services.lifecycle
    action = args.plugin_action
    if action == "list":
        plugins = lifecycle.list_plugins()
        if not plugins:
            print("No plugins installed.")
        for p in plugins:
            state = "enabled" if p.manifest.enabled else "disabled"
            print(f"{p.name:<20} {p.manifest.version:<10} {p.manifest.type:<9} {state:<9} {p.manifest.description}")
        return 0
    if action == "info":
        p = lifecycle.get_plugin(args.name)
        m = p.manifest
        print(f"Name:        {m.name}")
        print(f"Version:     {m.version}")
        print(f"Description: {m.description}")
        print(f"Author:      {m.author}")
        print(f"Type:        {m.type}")
        print(f"Enabled:     {str(m.enabled).lower()}")
        if m.executable:
            print(f"Executable:  {m.executable}")
        if p.directory is not None:
            print(f"Directory:   {p.directory}")
        for c in m.commands:
            print(f"Command:     {c.name}  {c.description}")
        if m.hooks:
            print(f"Hooks:       {', '.join(m.hooks)}")
        if m.dependencies:
            print(f"Depends on:  {', '.join(m.dependencies)}")
        return 0
    if action == "install":
        manifest = lifecycle.install(args.source)
        print(f"Plugin '{manifest.name}' installed.")
        return 0
    if action == "uninstall":
        if not lifecycle.uninstall(args.name):
            print(f"Plugin '{args.name}' is not installed.", file=sys.stderr)
            return 1
        print(f"Plugin '{args.name}' uninstalled.")
        return 0
    if action == "enable":
        lifecycle.enable(args.name)
        print(f"Plugin '{args.name}' enabled.")
        return 0
    if action == "disable":
        lifecycle.disable(args.name)
        print(f"Plugin '{args.name}' disabled.")
        return 0
    if action == "config":
        if args.key is None:
            for key, value in sorted(lifecycle.list_config(args.name).items()):
                print(f"{key}={value}")
        elif args.value is None:
            print(lifecycle.get_config(args.name, args.key))
        else:
            lifecycle.set_config(args.name, args.key, args.value)
            print(f"Set {args.key} for plugin '{args.name}'.")
        return 0
    if action == "create":
        plugin_dir = lifecycle.create_plugin(args.name)
        print(f"Plugin template created: {plugin_dir}")
        print(f"Run 'ambros plugin enable {args.name}' when ready.")
        return 0
    if action == "deps":
        status = lifecycle.check_dependencies(args.name)
        if args.install:
            lifecycle.install_dependencies(lifecycle.get_plugin(args.name).manifest)
            status = lifecycle.check_dependencies(args.name)
        for dep, present in sorted(status.items()):
            print(f"{dep}: {'installed' if present else 'missing'}")
        return 0 if all(status.values()) else 1
    if action == "registry":
        if args.registry_action == "list":
            registries = lifecycle.list_registries()
            if not registries:
                print("No registries configured.")
            for r in registries:
                print(f"{r.name}  {r.url}")
        elif args.registry_action == "add":
            lifecycle.add_registry(args.name, args.url)
            print(f"Registry '{args.name}' added.")
        else:
            lifecycle.remove_registry(args.name)
            print(f"Registry '{args.name}' removed.")
        return 0
    if action == "audit":
        for event in lifecycle.list_audit_events(limit=args.limit):
            print(f"{event.ts.isoformat(timespec='seconds')}  {event.action:<16} {event.plugin_name:<20} {event.outcome}")
        return 0
    if action == "run":
        return services.plugins.dispatch(args.name, args.plugin_command, _strip_separator(args.args))
    raise AssertionError(f"unhandled plugin action: {action}")


def _cmd_hook(services: AppServices, args: argparse.Namespace) -> int:
    try:
        handled = services.plugins.trigger_hook(args.event, _strip_separator(args.args))
    except HookDispatchError as exc:
        for name in exc.handled:
            print(f"{name}: ok")
        for name, err in sorted(exc.failures.items()):
            print(f"{name}: {err}", file=sys.stderr)
        return 1
    for name in handled:
        print(f"{name}: ok")
    if not handled:
        print(f"No enabled plugin handles '{args.event}'.")
    return 0


def _cmd_serve(services: AppServices, args: argparse.Namespace) -> int:
    import uvicorn

    from ambros.api.app import create_app

    uvicorn.run(create_app(services), host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ambros", description="Run, store and replay shell commands")
    parser.add_argument("--version", action="version", version=f"ambros {__version__}")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the database, plugins and .env (default: ~/.ambros)",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", ""))
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mode_flags(p: argparse.ArgumentParser) -> None:
        group = p.add_mutually_exclusive_group()
        group.add_argument("-a", "--auto", action="store_true", help="Attach the command to this terminal (PTY)")
        group.add_argument("--echo", action="store_true", help="Show output live and also capture it")
        p.add_argument("--no-store", action="store_true", help="Do not record the execution")
        p.add_argument("--dry-run", action="store_true", help="Print what would run without running it")

    p_run = sub.add_parser("run", help="Run a command and store the result")
    add_mode_flags(p_run)
    p_run.add_argument("-t", "--tag", action="append", help="Tag to attach (repeatable)")
    p_run.add_argument("-c", "--category", help="Category for the stored command")
    p_run.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments, after --")
    p_run.set_defaults(func=_cmd_run)

    p_rerun = sub.add_parser("rerun", help="Execute a stored command again")
    add_mode_flags(p_rerun)
    p_rerun.add_argument("command_id")
    p_rerun.set_defaults(func=_cmd_rerun)

    p_store = sub.add_parser("store", help="Store a command without running it")
    p_store.add_argument("-n", "--name", help="Id for the stored command")
    p_store.add_argument("-d", "--description", help="Description of the command")
    p_store.add_argument("-t", "--tag", action="append", help="Tag to attach (repeatable)")
    p_store.add_argument("-c", "--category", help="Category for the stored command")
    p_store.add_argument("--force", action="store_true", help="Overwrite a stored command with the same id")
    p_store.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments, after --")
    p_store.set_defaults(func=_cmd_store)

    p_hist = sub.add_parser("history", help="List stored commands")
    p_hist.add_argument("-n", "--limit", type=int, default=20)
    p_hist.add_argument("-t", "--tag", default="")
    p_hist.set_defaults(func=_cmd_history)

    p_show = sub.add_parser("show", help="Show one stored command")
    p_show.add_argument("command_id")
    p_show.set_defaults(func=_cmd_show)

    p_del = sub.add_parser("delete", help="Delete a stored command")
    p_del.add_argument("command_id")
    p_del.set_defaults(func=_cmd_delete)

    p_chain = sub.add_parser("chain", help="Manage and execute command chains")
    chain_sub = p_chain.add_subparsers(dest="chain_action", required=True)
    c_create = chain_sub.add_parser("create")
    c_create.add_argument("name")
    c_create.add_argument("commands", nargs="+", help="Stored command ids, in order")
    c_create.add_argument("-d", "--description", default="")
    c_create.add_argument("--conditional", action="store_true", help="Continue after a failed command")
    c_create.add_argument("--parallel", action="store_true")
    c_create.add_argument("--retry", type=int, default=0)
    c_create.add_argument("--timeout", type=float, default=None, help="Chain timeout in seconds")
    chain_sub.add_parser("list")
    for action in ("show", "delete"):
        chain_sub.add_parser(action).add_argument("name")
    c_exec = chain_sub.add_parser("exec")
    c_exec.add_argument("name")
    c_exec.add_argument("--dry-run", action="store_true")
    c_exec.add_argument("--store", action="store_true", help="Store the chain result")
    c_export = chain_sub.add_parser("export")
    c_export.add_argument("name")
    c_export.add_argument("file")
    c_import = chain_sub.add_parser("import")
    c_import.add_argument("file")
    c_import.add_argument("--force", action="store_true", help="Overwrite an existing chain")
    p_chain.set_defaults(func=_cmd_chain)

    p_plugin = sub.add_parser("plugin", help="Manage plugins")
    plugin_sub = p_plugin.add_subparsers(dest="plugin_action", required=True)
    plugin_sub.add_parser("list")
    for action in ("info", "uninstall", "enable", "disable", "create"):
        plugin_sub.add_parser(action).add_argument("name")
    pl_install = plugin_sub.add_parser("install")
    pl_install.add_argument("source", help="Local plugin directory or plugin name in a registry")
    pl_config = plugin_sub.add_parser("config")
    pl_config.add_argument("name")
    pl_config.add_argument("key", nargs="?")
    pl_config.add_argument("value", nargs="?")
    pl_deps = plugin_sub.add_parser("deps")
    pl_deps.add_argument("name")
    pl_deps.add_argument("--install", action="store_true")
    pl_audit = plugin_sub.add_parser("audit")
    pl_audit.add_argument("-n", "--limit", type=int, default=50)
    pl_registry = plugin_sub.add_parser("registry")
    reg_sub = pl_registry.add_subparsers(dest="registry_action", required=True)
    reg_sub.add_parser("list")
    reg_add = reg_sub.add_parser("add")
    reg_add.add_argument("name")
    reg_add.add_argument("url")
    reg_sub.add_parser("remove").add_argument("name")
    pl_run = plugin_sub.add_parser("run")
    pl_run.add_argument("name")
    pl_run.add_argument("plugin_command")
    pl_run.add_argument("args", nargs=argparse.REMAINDER)
    p_plugin.set_defaults(func=_cmd_plugin)

    p_hook = sub.add_parser("hook", help="Trigger a hook on every enabled plugin")
    p_hook.add_argument("event")
    p_hook.add_argument("args", nargs=argparse.REMAINDER)
    p_hook.set_defaults(func=_cmd_hook)

    p_serve = sub.add_parser("serve", help="Serve the read-only HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8765)
    p_serve.set_defaults(func=_cmd_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(Path(args.config_dir))
    except AmbrosError as exc:
        print(describe_error(exc), file=sys.stderr)
        return 1
    args.log_level = (args.log_level or config.log_level or "INFO").upper()
    configure_logging(args.log_level)

    try:
        services = build_services(config)
        return int(args.func(services, args))
    except AmbrosError as exc:
        print(describe_error(exc), file=sys.stderr)
        logger.debug("command failed", exc_info=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
