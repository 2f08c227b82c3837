"""CLI entry point: parse, run, status, scheduler."""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from scripts.provisioning.base_adapter import ProvisioningAdapter
from scripts.provisioning.config import ProvisioningConfig, load_config
from scripts.provisioning.errors import EnvironmentUnavailableError
from scripts.provisioning.extractor import Extractor, discover_export_files
from scripts.provisioning.logging_config import configure_logging
from scripts.provisioning.models import RunMode, RunSummary
from scripts.provisioning.orchestrator import Orchestrator
from scripts.provisioning.registry import EnvironmentRegistry, load_index
from scripts.provisioning.reporting import summarize
from scripts.provisioning.status_store import StatusStore

logger = logging.getLogger("provisioning.cli")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2


ADAPTER_REGISTRY: dict[str, tuple[str, str]] = {
    # name -> (module_path, class_name)
    "command": ("scripts.provisioning.adapters.command", "CommandAdapter"),
}


def _get_adapter(name: str, config: ProvisioningConfig) -> ProvisioningAdapter:
    """Instantiate a provisioning adapter by name."""
    entry = ADAPTER_REGISTRY.get(name)
    if not entry:
        raise ValueError(
            f"Unknown provisioning adapter {name!r}, expected one of {sorted(ADAPTER_REGISTRY)}"
        )
    module_path, class_name = entry
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls(config)


def parse_user_range(value: str) -> Optional[list[int]]:
    """Parse `all`, `5`, `1-10`, `3,7,9` or `1-3,7` into sorted user numbers.

    Returns None for `all`.
    """
    value = value.strip()
    if value.lower() in ("", "all"):
        return None
    users: set[int] = set()
    for part in value.split(","):
        part = part.strip()
        start, sep, end = part.partition("-")
        if not start.isdigit() or (sep and not end.isdigit()):
            raise argparse.ArgumentTypeError(
                f"Invalid user range {value!r}; use formats like 1-10, 1,3,5 or 5"
            )
        first, last = int(start), int(end) if sep else int(start)
        if first < 1 or last < first:
            raise argparse.ArgumentTypeError(f"Invalid user range {part!r}")
        users.update(range(first, last + 1))
    return sorted(users)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def _with_directory(config: ProvisioningConfig, directory: Optional[str]) -> ProvisioningConfig:
    if not directory:
        return config
    return replace(config, user_env_dir=Path(directory))


def _print_summary(summary: RunSummary) -> None:
    print()
    print("=================================")
    print("  MULTI-USER SETUP SUMMARY")
    print("=================================")
    if summary.dry_run:
        print("Mode:        DRY RUN (no jobs executed)")
    print(f"Total Users: {summary.total}")
    print(f"Completed:   {summary.completed}")
    print(f"Failed:      {summary.failed}")
    print(f"Running:     {summary.running}")
    print(f"Not Started: {summary.not_started}")
    print(f"Skipped:     {summary.skipped}")
    if summary.failures:
        print()
        print("Failed users (re-run with --resume to retry):")
        for user_number, log_path in summary.failures:
            print(f"  User {user_number:02d}: {log_path}")
    print()


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_parse(args: argparse.Namespace, config: ProvisioningConfig) -> int:
    """Extract export files into numbered descriptors plus the index."""
    details_dir = Path(args.details_dir) if args.details_dir else config.extractor.details_dir
    output_dir = Path(args.output) if args.output else config.user_env_dir

    if args.files:
        files = []
        for name in args.files.split(","):
            name = name.strip()
            if name:
                path = Path(name)
                files.append(path if path.is_absolute() else details_dir / path)
    else:
        if not details_dir.is_dir():
            logger.error("Workshop details directory not found: %s", details_dir)
            return EXIT_USAGE
        files = discover_export_files(details_dir, config.extractor.base_name)

    if not files:
        logger.error(
            "No workshop details files found; expected %s.txt, %s2.txt, ...",
            config.extractor.base_name,
            config.extractor.base_name,
        )
        return EXIT_USAGE
    missing = [str(f) for f in files if not f.is_file()]
    if missing:
        logger.error("Workshop details file(s) not found: %s", ", ".join(missing))
        return EXIT_USAGE

    extractor = Extractor(config.extractor.service_id_pattern)
    records = extractor.extract(files)

    registry = EnvironmentRegistry(output_dir)
    try:
        descriptors, _ = registry.register(records, dry_run=args.dry_run, source_files=files)
    except EnvironmentUnavailableError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    print()
    print("==================================")
    print("  WORKSHOP DETAILS PARSE COMPLETE")
    print("==================================")
    print(f"Users processed:      {len(descriptors)}")
    print(f"Blocks dropped:       {len(extractor.diagnostics)}")
    print(f"Failing validation:   {len(registry.diagnostics)}")
    for name, count in extractor.file_counts.items():
        print(f"  {name}: {count} users ({extractor.file_strategies.get(name, '')})")
    if args.dry_run:
        print("Mode: DRY RUN (no files created)")
    else:
        print(f"Output directory:     {output_dir}")
    print()
    return EXIT_OK


def cmd_run(args: argparse.Namespace, config: ProvisioningConfig) -> int:
    """Provision the selected users through the bounded worker pool."""
    config = _with_directory(config, args.directory).with_overrides(
        max_parallel=args.parallel,
        job_timeout_s=args.timeout,
    )
    if args.resume:
        mode = RunMode.RESUME
    elif args.force:
        mode = RunMode.FORCE
    else:
        mode = RunMode.NORMAL

    try:
        adapter = _get_adapter(config.orchestrator.adapter, config)
    except ValueError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    orchestrator = Orchestrator(config, adapter)
    try:
        summary = orchestrator.run(
            targets=args.users,
            max_concurrency=config.orchestrator.max_parallel,
            mode=mode,
            dry_run=args.dry_run,
        )
    except EnvironmentUnavailableError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    _print_summary(summary)
    if summary.dry_run:
        return EXIT_OK
    if summary.total == 0 and mode is RunMode.RESUME:
        print("No failed setups to resume.")
        return EXIT_OK
    return EXIT_OK if summary.ok else EXIT_FAILURES


def cmd_status(args: argparse.Namespace, config: ProvisioningConfig) -> int:
    """Show the current status of each registered user."""
    config = _with_directory(config, args.directory)
    try:
        index = load_index(config.user_env_dir)
    except EnvironmentUnavailableError as exc:
        print(f"No user environments found: {exc}")
        return EXIT_USAGE

    store = StatusStore(config.log_dir)
    numbers = index.user_numbers() if args.users is None else args.users
    summary = summarize(index, store, numbers)

    fmt = "{:<6}  {:<12}  {:<20}  {:<36}  {}"
    print(fmt.format("USER", "STATE", "LAST ATTEMPT", "EMAIL", "LOG"))
    print("-" * 110)
    for user_number, status in store.get_statuses(sorted(set(numbers))).items():
        row = index.get(user_number)
        if row is None:
            continue
        attempted = (
            status.last_attempt_time.isoformat()[:19] if status.last_attempt_time else ""
        )
        print(fmt.format(
            f"{user_number:02d}",
            status.state.value,
            attempted,
            row.email[:36],
            status.log_path or "",
        ))
    _print_summary(summary)
    return EXIT_OK


def cmd_scheduler(args: argparse.Namespace, config: ProvisioningConfig) -> int:
    """Run Resume sweeps on an interval until every user completes."""
    from scripts.provisioning.scheduler import start_scheduler

    config = _with_directory(config, args.directory).with_overrides(max_parallel=args.parallel)
    try:
        adapter = _get_adapter(config.orchestrator.adapter, config)
    except ValueError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    orchestrator = Orchestrator(config, adapter)
    sweep = start_scheduler(config, orchestrator, targets=args.users)
    if sweep.last_summary is None:
        return EXIT_USAGE
    return EXIT_OK if sweep.last_summary.failed == 0 else EXIT_FAILURES


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workshop-provision",
        description="Workshop environment parsing and multi-user provisioning",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # parse command
    parse_parser = subparsers.add_parser("parse", help="Parse workshop details into user environments")
    parse_parser.add_argument("--details-dir", help="Directory holding workshop_details*.txt")
    parse_parser.add_argument("--files", help="Comma-separated export files (disables discovery)")
    parse_parser.add_argument("--output", "-o", help="Output directory for user environments")
    parse_parser.add_argument("--dry-run", action="store_true", help="Preview without writing files")
    parse_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parse_parser.set_defaults(func=cmd_parse)

    # run command
    run_parser = subparsers.add_parser("run", help="Provision user environments in parallel")
    run_parser.add_argument("--directory", "-d", help="User environments directory")
    run_parser.add_argument(
        "--users", "-u",
        type=parse_user_range,
        default=None,
        help="Users to target: all, 1-10, 3,7,9 (default: all)",
    )
    run_parser.add_argument("--parallel", "-p", type=_positive_int, help="Max parallel setups")
    mode_group = run_parser.add_mutually_exclusive_group()
    mode_group.add_argument("--resume", action="store_true", help="Only retry users not yet completed")
    mode_group.add_argument("--force", action="store_true", help="Re-run users even if completed")
    run_parser.add_argument("--timeout", type=int, help="Per-job timeout in seconds (0 disables)")
    run_parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    run_parser.set_defaults(func=cmd_run)

    # status command
    status_parser = subparsers.add_parser("status", help="Show per-user provisioning status")
    status_parser.add_argument("--directory", "-d", help="User environments directory")
    status_parser.add_argument("--users", "-u", type=parse_user_range, default=None)
    status_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    status_parser.set_defaults(func=cmd_status)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Retry failed users on an interval")
    sched_parser.add_argument("--directory", "-d", help="User environments directory")
    sched_parser.add_argument("--users", "-u", type=parse_user_range, default=None)
    sched_parser.add_argument("--parallel", "-p", type=_positive_int, help="Max parallel setups")
    sched_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sched_parser.set_defaults(func=cmd_scheduler)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(EXIT_USAGE)

    configure_logging("DEBUG" if args.verbose else config.log_level, config.log_format)
    sys.exit(args.func(args, config))
