"""
Command line entry point.

    timekeeper apply   write time settings and restart the time service
    timekeeper health  evaluate time synchronization health

Exit codes (health): 0 OK, 1 Warning, 2 Critical, 3 internal fault.
Exit codes (apply):  0 applied or declined, 1 a step failed,
                     2 invalid input, 3 internal fault.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from timekeeper.config import get_settings
from timekeeper.models.health import SyncThresholds
from timekeeper.services import report
from timekeeper.services.applier import (
    ChangeSet,
    ConfigurationApplier,
    ConfigurationApplyError,
    build_change_set,
)
from timekeeper.services.health_evaluator import build_evaluator
from timekeeper.services.ntp_settings import ServerType
from timekeeper.services.regions import Region
from timekeeper.services.service_manager import get_service_manager
from timekeeper.services.settings_store import get_settings_store
from timekeeper.services.time_service import get_time_service

logger = logging.getLogger("timekeeper")

EXIT_OK = 0
EXIT_APPLY_FAILED = 1
EXIT_USAGE = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="timekeeper",
        description="Configure and monitor the Windows Time service.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser(
        "apply",
        help="Write server list and poll interval, then restart and resync.",
    )
    source = apply_parser.add_mutually_exclusive_group()
    source.add_argument(
        "--servers",
        nargs="+",
        metavar="SERVER",
        help="Explicit time servers, e.g. time.example.org or time.example.org,0x9",
    )
    source.add_argument(
        "--region",
        type=Region,
        choices=list(Region),
        metavar="{" + ",".join(r.value for r in Region) + "}",
        help="Use the pool.ntp.org servers of a region (default: Auto).",
    )
    apply_parser.add_argument(
        "--poll-interval",
        type=int,
        metavar="SECONDS",
        help="Poll interval in seconds, 64-86400 (default depends on server type).",
    )
    apply_parser.add_argument(
        "--server-type",
        type=ServerType,
        choices=list(ServerType),
        metavar="{Server,Workstation}",
        help="Pick the default poll interval for this type (default: detect).",
    )
    apply_parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Apply without asking for confirmation.",
    )

    health_parser = subparsers.add_parser("health", help="Evaluate time sync health.")
    health_parser.add_argument(
        "--max-hours",
        type=float,
        default=settings.max_hours_since_sync,
        help="Last sync up to this many hours ago is OK (default: %(default)s).",
    )
    health_parser.add_argument(
        "--alert-hours",
        type=float,
        default=settings.alert_threshold_hours,
        help="Last sync older than this many hours is critical (default: %(default)s).",
    )
    health_parser.add_argument(
        "--peers",
        action="store_true",
        help="Also query and report peers.",
    )
    health_parser.add_argument(
        "--repair",
        action="store_true",
        help="Re-register the service if it ignores the configured poll interval.",
    )
    health_parser.add_argument(
        "--export",
        type=Path,
        default=Path(settings.report_path) if settings.report_path else None,
        metavar="PATH",
        help="Write the structured report as JSON to PATH.",
    )
    health_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the structured report instead of the text report.",
    )
    return parser.parse_args(argv)


def _confirm_on_console(change_set: ChangeSet) -> bool:
    print("The following time settings will be applied:")
    print(change_set.describe())
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def run_apply(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = get_settings_store()
    try:
        change_set = build_change_set(
            store,
            servers=args.servers,
            region=args.region,
            poll_interval=args.poll_interval,
            server_type=args.server_type,
        )
    except (ValueError, ValidationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_USAGE

    if change_set.region is not None and change_set.region.fallback:
        print(
            f"Warning: timezone {change_set.region.timezone!r} is not mapped to a region; "
            f"using {change_set.region.region.value}",
            file=sys.stderr,
        )

    applier = ConfigurationApplier(
        time_service=get_time_service(),
        service_manager=get_service_manager(),
        store=store,
        stop_timeout=settings.stop_timeout_seconds,
    )
    try:
        result = applier.apply(change_set, assume_yes=args.yes, confirm=_confirm_on_console)
    except ConfigurationApplyError as exc:
        logger.error("Configuration failed: %s", exc)
        return EXIT_APPLY_FAILED
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_USAGE

    if result.cancelled:
        print("Cancelled; no changes made.")
        return EXIT_OK
    print("Time settings applied.")
    if not result.resync_succeeded:
        print("Resync is still in progress.")
    return EXIT_OK


def run_health(args: argparse.Namespace) -> int:
    try:
        thresholds = SyncThresholds(
            max_hours_since_sync=args.max_hours,
            alert_threshold_hours=args.alert_hours,
        )
    except ValidationError as exc:
        logger.error("Invalid thresholds: %s", exc)
        return report.INTERNAL_FAULT_EXIT_CODE

    verdict = build_evaluator(thresholds).evaluate(
        include_peers=args.peers,
        repair=args.repair,
    )

    if args.json:
        print(json.dumps(report.build_report(verdict), ensure_ascii=False, indent=2))
    else:
        print(report.render_text(verdict))
    if args.export is not None:
        report.write_json_report(verdict, args.export)
        logger.info("Report written to %s", args.export)
    return report.exit_code_for(verdict)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else get_settings().log_level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    handler = run_apply if args.command == "apply" else run_health
    try:
        return handler(args)
    except Exception:
        logger.exception("Unhandled error during %s", args.command)
        return report.INTERNAL_FAULT_EXIT_CODE


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
