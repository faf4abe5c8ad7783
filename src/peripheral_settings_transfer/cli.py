"""Command-line shell around the migration engine."""

from __future__ import annotations

import argparse
import json
import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from .catalog import SchemaCatalog
from .config import CONFIG_ENV_PREFIX, OUTPUT_FORMATS, Config, load_config
from .errors import MigrationError
from .logging import configure_logging, get_logger
from .rewriter import COPY, MOVE, operation_dict
from .transfer import SettingsStore, transfer_assignments


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="settings-transfer",
        description=(
            "Copy or move the configuration of one paired input device onto another "
            "inside the vendor settings store. Close the vendor application first. "
            f"Defaults come from {CONFIG_ENV_PREFIX}* env vars and an optional TOML file. "
            "Examples: `settings-transfer list-devices settings.db`, "
            "`settings-transfer transfer-assignments settings.db 2b034 2b035 --dry-run`."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"TOML configuration file (env: {CONFIG_ENV_PREFIX}CONFIG).",
    )
    parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...).")
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        default=None,
        help="Log record format on stderr.",
    )
    parser.add_argument(
        "--output",
        choices=list(OUTPUT_FORMATS),
        default=None,
        help="Output format on stdout. Defaults to 'plain'.",
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help="Directory for pre-write backups. Defaults to the store's directory.",
    )
    parser.add_argument(
        "--schema-version",
        default=None,
        help="Bind this catalog version instead of detecting it.",
    )
    parser.add_argument(
        "--catalog",
        dest="catalog_path",
        type=Path,
        default=None,
        help="JSON file with extra schema catalog versions.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_inspect_commands(subparsers)
    _add_transfer_commands(subparsers)
    return parser


def _add_inspect_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    list_devices = subparsers.add_parser(
        "list-devices",
        help="List paired devices as 'identifier: display name'",
        description="Lists every device in the store's device table, ordered by identifier.",
    )
    list_devices.add_argument("store", type=Path, help="Path to the settings database")
    list_devices.add_argument(
        "--device-type",
        dest="device_types",
        action="append",
        default=None,
        help="Only list devices of this type (repeatable), e.g. MOUSE.",
    )
    list_devices.set_defaults(func=_cmd_list_devices)

    show_settings = subparsers.add_parser(
        "show-settings",
        help="Dump the configuration rows owned by one device",
        description="Prints the device graph: rows, blob payloads as hex and embedded references.",
    )
    show_settings.add_argument("store", type=Path, help="Path to the settings database")
    show_settings.add_argument("device_id", help="Device identifier")
    show_settings.set_defaults(func=_cmd_show_settings)

    show_schema = subparsers.add_parser(
        "show-schema",
        help="Show the detected schema version and owned tables",
        description="Detects which catalog version matches the store and lists its tables.",
    )
    show_schema.add_argument("store", type=Path, help="Path to the settings database")
    show_schema.set_defaults(func=_cmd_show_schema)


def _add_transfer_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    transfer = subparsers.add_parser(
        "transfer-assignments",
        help="Copy a device's configuration onto another device",
        description=(
            "Replaces the target's configuration for every slot the source configures. "
            "Slots only configured on the target are kept. A timestamped backup of the "
            "store is written before any change."
        ),
    )
    transfer.add_argument("store", type=Path, help="Path to the settings database")
    transfer.add_argument("source", help="Identifier of the device to copy from")
    transfer.add_argument("target", help="Identifier of the device to copy to")
    transfer.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the plan without locking, backing up or writing the store.",
    )
    transfer.add_argument(
        "--move",
        action="store_true",
        help="Move the rows to the target instead of copying them (for a replaced device).",
    )
    transfer.set_defaults(func=_cmd_transfer_assignments)


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "log_level": args.log_level,
        "log_format": args.log_format,
        "output": args.output,
        "backup_dir": args.backup_dir,
        "schema_version": args.schema_version,
        "catalog_path": args.catalog_path,
    }


def _catalog(config: Config) -> SchemaCatalog:
    return SchemaCatalog.load(config.catalog_path)


def _print_output(
    data: Any,
    output: str,
    plain: Callable[[Any], Iterable[str]],
    title: Optional[str] = None,
) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    elif output == "json":
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")
    elif output == "table":
        Console(soft_wrap=False).print(_build_table(data, title))
    else:
        for line in plain(data):
            sys.stdout.write(f"{line}\n")


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _build_table(data: Any, title: Optional[str]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan", box=box.ROUNDED)
    if isinstance(data, list):
        columns: List[str] = []
        for record in data:
            for key in record:
                if key not in columns:
                    columns.append(key)
        for column in columns:
            table.add_column(column, style="white")
        for record in data:
            table.add_row(*(_cell(record.get(column)) for column in columns))
        return table
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key, value in data.items():
        table.add_row(str(key), _cell(value))
    return table


def _cmd_list_devices(config: Config, args: argparse.Namespace) -> int:
    device_types = args.device_types or config.device_types
    with SettingsStore(args.store, _catalog(config), config.schema_version) as store:
        devices = store.list_devices([value.upper() for value in device_types])
    data = [
        {
            "identifier": device.identifier,
            "display_name": device.display_name,
            "model": device.model,
            "device_type": device.device_type,
        }
        for device in devices
    ]
    _print_output(
        data,
        config.output,
        lambda records: (f"{record['identifier']}: {record['display_name']}" for record in records),
        title="Devices",
    )
    return 0


def _plain_graph(data: Mapping[str, Any]) -> Iterable[str]:
    yield f"device {data['device_id']}: {len(data['rows'])} rows"
    for table, count in data["counts"].items():
        yield f"  {table}: {count}"
    for row in data["rows"]:
        values = " ".join(f"{key}={value}" for key, value in row["values"].items())
        yield f"{row['table']}#{row['rowid']} {values}"
        for ref in row["references"]:
            yield (
                f"  ref {ref['column']}@{ref['offset']}+{ref['length']} -> {ref['identifier']}"
            )


def _cmd_show_settings(config: Config, args: argparse.Namespace) -> int:
    with SettingsStore(args.store, _catalog(config), config.schema_version) as store:
        graph = store.extract(args.device_id)
    data = graph.as_dict()
    if config.output == "table":
        data = [
            {
                "table": row["table"],
                "rowid": row["rowid"],
                "slot": row["slot"],
                "references": [ref["identifier"] for ref in row["references"]],
            }
            for row in data["rows"]
        ]
    _print_output(data, config.output, _plain_graph, title=f"Settings of {args.device_id}")
    return 0


def _cmd_show_schema(config: Config, args: argparse.Namespace) -> int:
    with SettingsStore(args.store, _catalog(config), config.schema_version) as store:
        version = store.schema.version
    tables = [
        {
            "table": descriptor.name,
            "owner": descriptor.device_column
            or f"{descriptor.parent.table} via {descriptor.parent.column}",
            "identity": list(descriptor.identity_columns),
            "blobs": [f"{blob.name}:{blob.codec}" for blob in descriptor.blob_columns],
        }
        for descriptor in version.tables
    ]
    data: Any = {
        "version": version.version,
        "device_table": version.device_table.name,
        "model_table": version.model_table.name if version.model_table else None,
        "tables": tables,
    }

    def plain(schema: Mapping[str, Any]) -> Iterable[str]:
        yield f"schema version {schema['version']} (devices: {schema['device_table']})"
        for entry in schema["tables"]:
            blobs = ", ".join(entry["blobs"]) or "-"
            yield f"  {entry['table']} owned by {entry['owner']}; blobs: {blobs}"

    if config.output == "table":
        data = tables
    _print_output(data, config.output, plain, title=f"Schema version {version.version}")
    return 0


def _plain_operation(op: Mapping[str, Any]) -> str:
    if op["op"] == "delete":
        return f"  delete {op['table']}#{op['rowid']}"
    if op["op"] == "update":
        return f"  update {op['table']}#{op['rowid']} set {', '.join(op['values'])}"
    parent = f" under {op['parent']['ref']}" if "parent" in op else ""
    return f"  insert {op['table']} from {op['ref']}{parent}"


def _cmd_transfer_assignments(config: Config, args: argparse.Namespace) -> int:
    logger = get_logger("transfer.cli")
    outcome = transfer_assignments(
        args.store,
        args.source,
        args.target,
        catalog=_catalog(config),
        schema_version=config.schema_version,
        backup_dir=config.backup_dir,
        mode=MOVE if args.move else COPY,
        dry_run=args.dry_run,
    )
    plan = outcome.plan
    data = outcome.as_dict()

    def plain(_: Any) -> Iterable[str]:
        if plan.is_empty():
            yield f"Nothing to do: {plan.target_id} already matches {plan.source_id}"
            return
        verb = "Would transfer" if outcome.dry_run else "Transferred"
        summary = plan.summary()
        yield (
            f"{verb} {plan.source_id} -> {plan.target_id} ({plan.mode}): "
            f"{summary['inserts']} inserts, {summary['updates']} updates, "
            f"{summary['deletes']} deletes, {summary['retained_slots']} target slots kept"
        )
        if outcome.dry_run:
            for op in plan.operations:
                yield _plain_operation(operation_dict(op))
        elif outcome.result is not None and outcome.result.backup is not None:
            yield f"Backup: {outcome.result.backup.path}"

    if config.output == "table":
        data = {key: value for key, value in data.items() if key != "operations"}
    _print_output(data, config.output, plain, title="Transfer")

    if outcome.committed and config.agent_restart_command:
        _restart_agent(config.agent_restart_command)
        logger.info("Vendor agent restarted", extra={"command": config.agent_restart_command})
    return 0


def _restart_agent(command: str) -> None:
    """Run the configured command that makes the vendor agent reload the store."""

    uid = str(os.getuid()) if hasattr(os, "getuid") else ""
    argv = shlex.split(command.replace("{uid}", uid))
    try:
        completed = subprocess.run(argv, check=False, capture_output=True, text=True)
    except OSError as exc:
        raise CliError(f"Agent restart failed; the transfer was committed: {exc}") from exc
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()
        raise CliError(
            f"Agent restart exited with {completed.returncode}; the transfer was committed"
            + (f": {detail}" if detail else "")
        )


def _format_error(exc: MigrationError) -> str:
    details = " ".join(f"{key}={value}" for key, value in exc.context.items())
    return f"error[{exc.kind}]: {exc.message}" + (f" {details}" if details else "")


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(_config_overrides(args), args.config)
    except (OSError, ValueError):
        sys.exit(1)
    configure_logging(config)
    logger = get_logger("transfer.cli")
    logger.debug("Configuration loaded", extra={"config": config.logging_dict()})

    try:
        func: Callable[[Config, argparse.Namespace], int] = args.func
        code = func(config, args)
    except MigrationError as exc:
        logger.debug("Command failed", extra={"command": args.command, "error": exc.kind})
        sys.stderr.write(f"{_format_error(exc)}\n")
        sys.exit(exc.exit_code)
    except CliError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
