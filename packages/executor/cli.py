from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

import yaml

from directives import TargetLoadError, load_target
from hostio import LocalConnection, SSHConnection
from planner import ExecutionPlanner, PlanningError, TagFilter

from .config import EngineConfig
from .fleet import HostLaneQueue, converge_hosts
from .report import ExitCode, RunReport, worst_exit_code
from .run import Run

logger = logging.getLogger(__name__)

LOCAL_HOST = "localhost"


def parse_extra_vars(items: Sequence[str]) -> Dict[str, Any]:
    """`-e key=value` pairs; values are parsed as YAML scalars (port=22 → int)."""
    extra: Dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got '{item}'")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        extra[key.strip()] = value
    return extra


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="converge",
        description="Converge hosts to a declarative target specification."
    )
    parser.add_argument("target", help="Target YAML file")

    where = parser.add_mutually_exclusive_group()
    where.add_argument("--host", action="append", default=[], metavar="HOST",
                       help="Remote host (repeatable)")
    where.add_argument("--local", action="store_true", help="Converge this machine")

    parser.add_argument("--user", default="root", help="SSH user (default: root)")
    parser.add_argument("--port", type=int, default=22, help="SSH port (default: 22)")
    parser.add_argument("--identity", help="SSH identity file")
    parser.add_argument("--proxy-jump", help="SSH jump host")
    parser.add_argument("--no-sudo", action="store_true", help="Do not wrap remote commands in sudo -n")

    parser.add_argument("--tags", help="Only run directives carrying one of these tags (comma-separated)")
    parser.add_argument("--skip-tags", help="Never run directives carrying one of these tags")
    parser.add_argument("--dry-run", action="store_true",
                        help="Probe and validate only; commit nothing, fire no handlers")
    parser.add_argument("-e", "--extra-var", action="append", default=[], metavar="KEY=VALUE",
                        help="Override a target variable (repeatable)")
    parser.add_argument("--allow-failure", action="append", default=[], metavar="ID",
                        help="Ignored failure of this directive/handler does not fail the run")
    parser.add_argument("--force-handlers", action="store_true",
                        help="Fire notified handlers even after a fatal abort")
    parser.add_argument("--timeout", type=float, help="Per-command timeout in seconds")
    parser.add_argument("--forks", type=int, default=4, help="Hosts converged concurrently")

    parser.add_argument("--list", action="store_true", help="List the planned directives and exit")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _config_from_args(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    overrides: Dict[str, Any] = {}
    if args.timeout:
        overrides["command_timeout"] = args.timeout
    if args.force_handlers:
        overrides["force_handlers"] = True
    if args.dry_run:
        overrides["dry_run"] = True
    if args.allow_failure:
        overrides["allowed_failures"] = frozenset(args.allow_failure)
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return replace(config, **overrides)


def _print_plan(target, tag_filter: TagFilter) -> None:
    plan = ExecutionPlanner().plan(target.directives, tag_filter, target.handler_map)
    print(f"Target '{target.name}': {len(plan)} of {len(target.directives)} directives")
    for directive in plan.runnable:
        tags = ",".join(sorted(directive.tags))
        flags = " [lockout_risk]" if directive.risk_class.value == "lockout_risk" else ""
        print(f"  {directive.id:<40} {tags:<30} {directive.label}{flags}")
    for directive_id, reason in plan.omitted:
        print(f"  - {directive_id:<38} {reason}")


def _print_reports(reports: Dict[str, RunReport], as_json: bool) -> None:
    if as_json:
        print(json.dumps({host: r.to_dict() for host, r in reports.items()}, indent=2))
        return
    for report in reports.values():
        print(report.summary())
        print()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = _config_from_args(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        extra_vars = parse_extra_vars(args.extra_var)
        target = load_target(args.target, extra_vars)
    except (ValueError, TargetLoadError) as e:
        print(f"error: {e}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    tag_filter = TagFilter.parse(args.tags, args.skip_tags)

    if args.list:
        try:
            _print_plan(target, tag_filter)
        except PlanningError as e:
            print(f"error: {e}", file=sys.stderr)
            return int(ExitCode.CONFIG_ERROR)
        return int(ExitCode.SUCCESS)

    if not args.local and not args.host:
        print("error: one of --host or --local is required", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    def connection_for(host: str):
        if args.local:
            return lambda: LocalConnection(default_timeout=config.command_timeout)
        return lambda: SSHConnection(
            host,
            user=args.user,
            port=args.port,
            default_timeout=config.command_timeout,
            proxy_jump=args.proxy_jump,
            identity_file=args.identity,
            sudo=not args.no_sudo
        )

    runs: List[Run] = []
    fleets: List[HostLaneQueue] = []

    def _interrupt(signum, frame):
        # Second Ctrl-C falls through to KeyboardInterrupt
        signal.signal(signal.SIGINT, signal.default_int_handler)
        for run in runs:
            run.cancel()
        for lanes in fleets:
            lanes.cancel_all()

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, _interrupt)

    try:
        hosts = [LOCAL_HOST] if args.local else args.host
        if len(hosts) == 1:
            run = Run(target, connection_for(hosts[0]), tag_filter=tag_filter, config=config, host=hosts[0])
            runs.append(run)
            reports = {hosts[0]: run.execute()}
        else:
            reports = converge_hosts(
                target, hosts, connection_for,
                tag_filter=tag_filter,
                config=config,
                max_concurrency=args.forks,
                on_start=fleets.append
            )
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    _print_reports(reports, args.json)
    return int(worst_exit_code(r.exit_code() for r in reports.values()))


if __name__ == "__main__":
    sys.exit(main())
