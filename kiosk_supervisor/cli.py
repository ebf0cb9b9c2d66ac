"""
kiosk-supervisor command line

Cron runs ``probe`` every 2 minutes and ``sweep`` every 15 minutes; the rest
are operator tools.

Examples:
  kiosk-supervisor status
  kiosk-supervisor probe
  kiosk-supervisor sweep --json
  kiosk-supervisor trigger --reason "manual"
  kiosk-supervisor reset
  kiosk-supervisor resources
  kiosk-supervisor test
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime

from pydantic import ValidationError

from . import __version__
from .config import get_settings
from .errors import SupervisorError
from .logging_config import get_logger, setup_logging
from .recovery import OutcomeStatus
from .supervisor import Supervisor


def build_supervisor() -> Supervisor:
    return Supervisor.from_settings(get_settings())


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _format_time(epoch: float) -> str:
    if not epoch:
        return "never"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Commands
# =============================================================================

def cmd_status(args):
    """Show escalation state and current health."""
    status = build_supervisor().status(include_health=not args.no_health)
    if args.json:
        _print_json(status)
        return 0

    print(f"\n{'='*60}")
    print("Kiosk Recovery Status")
    print(f"{'='*60}\n")
    print(f"  Level:         {status['level']} ({status['level_name']})")
    print(f"  Failures:      {status['failure_count']}")
    print(f"  Last failure:  {_format_time(status['last_failure_at'])}")
    print(f"  Next action:   {status['next_action']}")
    if status["lock_holder"]:
        holder = status["lock_holder"]
        print(f"  Lock held by:  {holder['owner']} (pid {holder['pid']})")
    healthy = status["currently_healthy"]
    if healthy is not None:
        print(f"  Health:        {'HEALTHY' if healthy else 'UNHEALTHY'}")
        for check in status.get("failed_checks", []):
            print(f"    - {check} failed")
    return 0


def cmd_trigger(args):
    """Run one escalation step now."""
    outcome = build_supervisor().trigger(reason=args.reason)
    if args.json:
        _print_json(outcome.to_dict())
    else:
        print(f"Recovery {outcome.status.value}", end="")
        if outcome.action:
            print(f": {outcome.action} (level {outcome.level_before} -> {outcome.level_after})")
        else:
            print()
    return 0 if outcome.status in (OutcomeStatus.RECOVERED, OutcomeStatus.SKIPPED) else 1


def cmd_reset(args):
    """Force the escalation state back to nominal."""
    if build_supervisor().reset():
        print("Recovery state reset")
        return 0
    print("Recovery in progress, state not reset", file=sys.stderr)
    return 1


def cmd_probe(args):
    """Run the health probe once."""
    report = build_supervisor().probe()
    if args.json:
        _print_json(report.to_dict())
    else:
        for check in report.checks:
            mark = "ok" if check.passed else "FAIL"
            print(f"  [{mark:>4}] {check.name}: {check.detail}")
    return 0 if report.healthy else 1


def cmd_sweep(args):
    """Run one resource sweep."""
    report = build_supervisor().sweep()
    if args.json:
        _print_json(report.to_dict())
    elif report.skipped:
        print("Resource sweep already running")
    else:
        for resource, actions in report.actions.items():
            print(f"  {resource}: {', '.join(actions)}")
        print(f"  freed: {report.freed_bytes / (1024 * 1024):.1f} MB")
    return 0


def cmd_resources(args):
    """Show a resource overview without acting on it."""
    snapshot = build_supervisor().resources()
    if args.json:
        _print_json(snapshot.to_dict())
        return 0

    print(f"\n{'='*60}")
    print("Kiosk Resource Status")
    print(f"{'='*60}\n")
    print(f"  Memory:       {snapshot.memory_pct:.1f}%")
    print(f"  Disk:         {snapshot.disk_pct:.1f}%")
    print(f"  Connections:  {snapshot.connection_count}")
    print(f"  Zombies:      {snapshot.zombie_count}")
    if snapshot.hot_processes:
        print("\n  High CPU processes:")
        for proc in snapshot.hot_processes:
            print(f"    {proc.pid:>7}  {proc.cpu_pct:5.1f}%  {int(proc.age_seconds):>7}s  {proc.name}")
    return 0


def cmd_test(args):
    """Stop the renderer and trigger recovery."""
    outcome = build_supervisor().run_recovery_test()
    print(f"Recovery test: {outcome.status.value} ({outcome.action})")
    return 0 if outcome.status == OutcomeStatus.RECOVERED else 1


COMMANDS = {
    "status": cmd_status,
    "trigger": cmd_trigger,
    "reset": cmd_reset,
    "probe": cmd_probe,
    "sweep": cmd_sweep,
    "resources": cmd_resources,
    "test": cmd_test,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiosk-supervisor",
        description="Self-healing supervisor for the kiosk display",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show escalation state and health")
    status_parser.add_argument("--no-health", action="store_true", help="Skip the live health checks")

    trigger_parser = subparsers.add_parser("trigger", help="Run one escalation step")
    trigger_parser.add_argument("--reason", default="operator", help="Reason recorded in the log")

    subparsers.add_parser("reset", help="Reset escalation state to nominal")
    subparsers.add_parser("probe", help="Run the health probe (cron, every 2 minutes)")
    subparsers.add_parser("sweep", help="Run the resource monitor (cron, every 15 minutes)")
    subparsers.add_parser("resources", help="Show resource usage")
    subparsers.add_parser("test", help="Stop the renderer and trigger recovery")

    for sub in subparsers.choices.values():
        sub.add_argument("--json", action="store_true", help="Print JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except ValidationError as e:
        # No LOG_DIR without settings; stderr is all there is
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logging(log_level=args.log_level, log_dir=settings.LOG_DIR)
    logger = get_logger("supervisor")

    try:
        return COMMANDS[args.command](args)
    except SupervisorError as e:
        logger.error(f"{args.command} failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.exception(f"{args.command} crashed", command=args.command, error=str(e))
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main() or 0)
