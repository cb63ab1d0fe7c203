"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the fleet orchestrator.

- Provides argparse-based CLI with one subcommand per task
- Loads configuration from a YAML file and the environment
- Runs gated commands as the given user / role

============================================================
USAGE
============================================================
python -m orchestrator.cli init-db
python -m orchestrator.cli run --config fleet.yaml
python -m orchestrator.cli dispatch-once --throttle 100
python -m orchestrator.cli score-fleet --site hq
python -m orchestrator.cli summary
python -m orchestrator.cli clear-allow-list --role Admin

============================================================
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from access_control import Actor
from core.config import FleetConfig
from core.exceptions import FleetException

from .console import FleetConsole
from .core import FleetOrchestrator, create_orchestrator, setup_logging


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fleet-orchestrator",
        description="Fleet orchestration engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run               - Run dispatch, scoring and maintenance loops
  dispatch-once     - Run one dispatch round and print its report
  score-fleet       - Score every device and print the fleet summary
  summary           - Print device, alert and execution summaries
  clear-allow-list  - Remove allow-list entries added by this system
  init-db           - Create missing tables

Examples:
  %(prog)s --config fleet.yaml run
  %(prog)s --role Operator dispatch-once --throttle 100
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        metavar="PATH",
        default=os.getenv("FLEET_CONFIG_FILE"),
        help="YAML configuration file (default: $FLEET_CONFIG_FILE or environment only)",
    )

    # --------------------------------------------------------
    # Identity Options
    # --------------------------------------------------------
    identity_group = parser.add_argument_group("Identity Options")

    identity_group.add_argument(
        "--user",
        type=str,
        default=os.getenv("FLEET_CLI_USER") or getpass.getuser(),
        help="User recorded in the audit trail",
    )

    identity_group.add_argument(
        "--role",
        type=str,
        default=os.getenv("FLEET_CLI_ROLE", "Operator"),
        help="Role checked for gated commands (default: Operator)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: from configuration)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=None,
        help="Logging format (default: from configuration)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    commands.add_parser("run", help="Run the orchestrator until interrupted")

    dispatch = commands.add_parser("dispatch-once", help="Run one dispatch round")
    dispatch.add_argument(
        "--throttle",
        type=int,
        default=None,
        metavar="N",
        help="Concurrency bound for this round (default: execution.throttle_limit)",
    )

    score = commands.add_parser("score-fleet", help="Score device health")
    score.add_argument("--site", type=str, default=None, help="Only devices of this site")

    commands.add_parser("summary", help="Print summaries")
    commands.add_parser("clear-allow-list", help="Remove programmatic allow-list entries")
    commands.add_parser("init-db", help="Create missing tables")

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []
    if args.config and not Path(args.config).is_file():
        errors.append(f"--config file not found: {args.config}")
    if getattr(args, "throttle", None) is not None and args.throttle < 1:
        errors.append("--throttle must be at least 1")
    if not args.user:
        errors.append("--user must not be empty")
    return errors


def build_orchestrator(args: argparse.Namespace) -> FleetOrchestrator:
    """Build the orchestrator from CLI arguments and environment."""
    if args.config:
        config = FleetConfig.from_env(FleetConfig.from_yaml(Path(args.config)))
        return create_orchestrator(config_path=Path(args.config), config=config)
    return create_orchestrator()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    orchestrator = build_orchestrator(args)
    config = orchestrator.config
    setup_logging(args.log_level or config.log_level, args.log_format or config.log_format)

    console = FleetConsole(orchestrator)
    actor = Actor(user=args.user, role=args.role, source_address="cli")

    try:
        if args.command == "init-db":
            orchestrator.init_db()
            print("Tables created")
        elif args.command == "run":
            orchestrator.init_db()
            await orchestrator.run_forever()
        elif args.command == "dispatch-once":
            report = await console.dispatch_now(actor, args.throttle)
            _print_json(report.to_dict())
        elif args.command == "score-fleet":
            scores = await console.score_fleet(actor, args.site)
            _print_json({
                "summary": console.health_summary(actor, scores).to_dict(),
                "devices": [s.to_dict() for s in scores],
            })
        elif args.command == "summary":
            _print_json({
                "devices": console.device_counts(actor),
                "alerts": console.alert_summary(actor).to_dict(),
                "execution": orchestrator.execution.stats(),
            })
        elif args.command == "clear-allow-list":
            removed = await console.clear_allow_list(actor)
            _print_json({"removed": removed})
        return 0

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130
    except FleetException as e:
        logging.error(f"{type(e).__name__}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    return asyncio.run(async_main(args))


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
