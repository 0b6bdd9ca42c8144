"""CLI entry point for svcstatus."""

import argparse
import json
import logging
import socket
import sys
import time

from . import __version__
from .config import RegistryConfig, load_config, merge_cli_args, resolve_database_url, validate_config
from .heartbeat import HeartbeatClient
from .query import StatusQuery
from .registry import InvalidRecord, ServiceStatus, SqlStatusStore, StoreUnavailable
from .server import DEFAULT_PORT, StatusRegistryClient, start_status_server


def _add_store_args(parser: argparse.ArgumentParser) -> None:
    """Add flags for commands that talk to the store directly."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--database-url", type=str, dest="database_url",
        help="SQLAlchemy URL of the status store (default: $SVCSTATUS_DATABASE_URL or $DATABASE_URL)",
    )
    parser.add_argument(
        "--create-schema", action="store_true", dest="create_schema", default=None,
        help="Create the service_status table if it does not exist",
    )
    parser.add_argument(
        "--log-level", type=str, dest="log_level",
        help="Logging level (default: INFO)",
    )


def _build_config(args) -> RegistryConfig:
    """Build a RegistryConfig from a config file + CLI overrides."""
    if getattr(args, "config", None):
        config = load_config(args.config)
    else:
        config = RegistryConfig()
    merge_cli_args(config, args)
    return config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _open_store(config: RegistryConfig) -> SqlStatusStore:
    return SqlStatusStore(
        resolve_database_url(config),
        pool_size=config.pool_size,
        pool_timeout=config.pool_timeout,
        create_schema=config.create_schema,
    )


def cmd_serve(args) -> None:
    """Serve the read-only query API until interrupted."""
    config = _build_config(args)
    _setup_logging(config.log_level)
    try:
        validate_config(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    store = _open_store(config)
    try:
        store.ping()
    except StoreUnavailable as e:
        print(f"Error: status store is not reachable: {e}", file=sys.stderr)
        store.close()
        sys.exit(1)

    query = StatusQuery(store, threshold=config.staleness_threshold)
    server = start_status_server(query, host=config.registry_host, port=config.registry_port)
    print(f"Status API listening on {config.registry_host}:{config.registry_port}", file=sys.stderr)
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        print("Shutting down.", file=sys.stderr)
    finally:
        server.shutdown()
        server.server_close()
        store.close()


def _client_for(args, store) -> HeartbeatClient:
    return HeartbeatClient(
        store,
        service_id=args.service_id,
        service_type=args.type,
        source_id=getattr(args, "source", None),
        host=args.host or socket.gethostname(),
        version=args.app_version,
        resume=True,
    )


def cmd_report(args) -> None:
    """Send a single heartbeat, continuing the record's current epoch."""
    config = _build_config(args)
    _setup_logging(config.log_level)
    stats = None
    if args.stats:
        try:
            stats = json.loads(args.stats)
        except ValueError as e:
            print(f"Error: --stats is not valid JSON: {e}", file=sys.stderr)
            sys.exit(1)

    with _open_store(config) as store:
        client = _client_for(args, store)
        try:
            ok = client.report(
                args.status,
                current_task=args.task,
                stats=stats,
                activity_occurred=args.activity,
            )
        except InvalidRecord as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    if not ok:
        print(f"Heartbeat for '{args.service_id}' was not recorded.", file=sys.stderr)
        sys.exit(1)


def cmd_report_error(args) -> None:
    """Record a failure against a record."""
    config = _build_config(args)
    _setup_logging(config.log_level)
    with _open_store(config) as store:
        client = _client_for(args, store)
        try:
            ok = client.report_error(args.message)
        except InvalidRecord as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    if not ok:
        print(f"Error report for '{args.service_id}' was not recorded.", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# svcstatus status subcommand
# ---------------------------------------------------------------------------

def _format_statuses(statuses, fmt: str) -> str:
    """Format a list of ClassifiedStatus objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in statuses], indent=2)
    lines = [_format_status(s) for s in statuses]
    return "\n".join(lines) if lines else "(no services)"


def _format_status(s) -> str:
    r = s.record
    line = f"{r.id}  {r.service_type}  {r.status}  {s.liveness.value}  age={s.age_seconds:.1f}s"
    if r.error_count:
        line += f"  errors={r.error_count}"
    if r.current_task:
        line += f"  task={r.current_task}"
    return line


def _run_query(fn):
    try:
        return fn()
    except StoreUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


def cmd_status_list(args) -> None:
    client = StatusRegistryClient(host=args.registry_host, port=args.registry_port)
    statuses = _run_query(lambda: client.list_services(
        service_type=args.type,
        source_id=args.source,
        status=args.status,
        liveness=args.liveness,
    ))
    print(_format_statuses(statuses, args.format))


def cmd_status_get(args) -> None:
    client = StatusRegistryClient(host=args.registry_host, port=args.registry_port)
    status = _run_query(lambda: client.get_service(args.service_id))
    if status is None:
        print(f"Service '{args.service_id}' not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(status.to_dict(), indent=2))
    else:
        print(_format_status(status))


def cmd_status_alive(args) -> None:
    client = StatusRegistryClient(host=args.registry_host, port=args.registry_port)
    statuses = _run_query(lambda: client.get_alive_services(service_type=args.type))
    print(_format_statuses(statuses, args.format))


def cmd_status_summary(args) -> None:
    client = StatusRegistryClient(host=args.registry_host, port=args.registry_port)
    summary = _run_query(client.get_summary)
    if args.format == "json":
        print(json.dumps(summary, indent=2))
        return
    counts = summary.get("by_liveness", {})
    print(f"total={summary.get('total', 0)}  " + "  ".join(f"{k}={v}" for k, v in counts.items()))
    for service_type, type_counts in sorted(summary.get("by_type", {}).items()):
        print(f"  {service_type}: " + "  ".join(f"{k}={v}" for k, v in type_counts.items()))


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host, --registry-port and --format to a status sub-parser."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the status API server (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=DEFAULT_PORT,
        help=f"Port of the status API (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _add_identity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("service_id", type=str, help="Record id, e.g. scraper:doj")
    parser.add_argument("--type", type=str, required=True, help="Service type (scraper, ocr, server, ...)")
    parser.add_argument("--host", type=str, default=None, help="Host name (default: this machine)")
    parser.add_argument("--app-version", type=str, dest="app_version", default=None, help="Build/release identifier")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="svcstatus",
        description="svcstatus: service liveness and activity registry",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Serve the read-only status API")
    _add_store_args(serve_parser)
    serve_parser.add_argument(
        "--registry-host", type=str, dest="registry_host",
        help="Interface to bind (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--registry-port", type=int, dest="registry_port",
        help=f"Port to bind (default: {DEFAULT_PORT})",
    )
    serve_parser.add_argument(
        "--staleness-threshold", type=float, dest="staleness_threshold",
        help="Seconds without a heartbeat before a record is stale (default: 30)",
    )
    serve_parser.add_argument(
        "--heartbeat-interval", type=float, dest="heartbeat_interval",
        help="Heartbeat interval used by the fleet, checked against the threshold (default: 10)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # report
    report_parser = subparsers.add_parser("report", help="Send one heartbeat for a record")
    _add_store_args(report_parser)
    _add_identity_args(report_parser)
    report_parser.add_argument("--source", type=str, default=None, help="Source being scraped (scrapers only)")
    report_parser.add_argument(
        "--status", type=str, default=ServiceStatus.RUNNING.value,
        choices=[s.value for s in ServiceStatus],
        help="Lifecycle status (default: running)",
    )
    report_parser.add_argument("--task", type=str, default=None, help="Description of the current task")
    report_parser.add_argument("--stats", type=str, default=None, help="Stats document as JSON")
    report_parser.add_argument(
        "--activity", action="store_true",
        help="Mark that real work happened (advances last_activity)",
    )
    report_parser.set_defaults(func=cmd_report)

    # report-error
    error_parser = subparsers.add_parser("report-error", help="Record a failure for a record")
    _add_store_args(error_parser)
    _add_identity_args(error_parser)
    error_parser.add_argument("--source", type=str, default=None, help="Source being scraped (scrapers only)")
    error_parser.add_argument("message", type=str, help="Error message")
    error_parser.set_defaults(func=cmd_report_error)

    # status
    status_parser = subparsers.add_parser("status", help="Query a running status API")
    status_sub = status_parser.add_subparsers(dest="status_command")

    # status list
    st_list = status_sub.add_parser("list", help="List service records")
    _add_registry_args(st_list)
    st_list.add_argument("--type", type=str, default=None, help="Filter by service type")
    st_list.add_argument("--source", type=str, default=None, help="Filter by source id")
    st_list.add_argument("--status", type=str, default=None, help="Filter by lifecycle status")
    st_list.add_argument(
        "--liveness", type=str, default=None, choices=["alive", "stale", "stopped"],
        help="Filter by liveness verdict",
    )
    st_list.set_defaults(func=cmd_status_list)

    # status get
    st_get = status_sub.add_parser("get", help="Get a single record by id")
    _add_registry_args(st_get)
    st_get.add_argument("service_id", type=str, help="Record id")
    st_get.set_defaults(func=cmd_status_get)

    # status alive
    st_alive = status_sub.add_parser("alive", help="List records with a recent heartbeat")
    _add_registry_args(st_alive)
    st_alive.add_argument("--type", type=str, default=None, help="Filter by service type")
    st_alive.set_defaults(func=cmd_status_alive)

    # status summary
    st_summary = status_sub.add_parser("summary", help="Count records by liveness and type")
    _add_registry_args(st_summary)
    st_summary.set_defaults(func=cmd_status_summary)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "status" and not args.status_command:
        status_parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
