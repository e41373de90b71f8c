"""
Triskell Bridge CLI — service entry point and configuration checks.

Commands:
- triskell-bridge run            — Start the bridge (login, jobs, HTTP listener)
- triskell-bridge check-config   — Validate config.yaml + environment, print it (secrets masked)
- triskell-bridge jobs           — List the scheduled jobs and their cron expressions
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from typing import Optional

logger = logging.getLogger("triskell_bridge.cli")

MODES = ["development", "production", "backup"]


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="triskell-bridge",
        description="Triskell Bridge — webhook relay and scheduled sync service",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start the bridge service")
    run_parser.add_argument("--config", help="Path to config.yaml (default: ./config.yaml)")
    run_parser.add_argument("--env", choices=MODES, help="Execution mode (overrides BRIDGE_ENV)")

    check_parser = subparsers.add_parser("check-config", help="Validate and print the configuration")
    check_parser.add_argument("--config", help="Path to config.yaml (default: ./config.yaml)")
    check_parser.add_argument("--env", choices=MODES, help="Execution mode (overrides BRIDGE_ENV)")

    jobs_parser = subparsers.add_parser("jobs", help="List scheduled jobs")
    jobs_parser.add_argument("--config", help="Path to config.yaml (default: ./config.yaml)")

    args = parser.parse_args(argv)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "check-config":
        return cmd_check_config(args)
    elif args.command == "jobs":
        return cmd_jobs(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    from triskell_bridge.engine.config import load_config

    environ = dict(os.environ)
    if getattr(args, "env", None):
        environ["BRIDGE_ENV"] = args.env
    return load_config(args.config, environ)


# ---------------------------------------------------------------------------
# triskell-bridge run
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    from triskell_bridge.bootstrap import EXIT_CONFIG_ERROR, run_service
    from triskell_bridge.engine.errors import ConfigError

    try:
        config = _load(args)
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return EXIT_CONFIG_ERROR

    return run_service(config)


# ---------------------------------------------------------------------------
# triskell-bridge check-config
# ---------------------------------------------------------------------------

def cmd_check_config(args: argparse.Namespace) -> int:
    from triskell_bridge.bootstrap import EXIT_CONFIG_ERROR
    from triskell_bridge.engine.errors import ConfigError

    try:
        config = _load(args)
        account = config.api_account
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return EXIT_CONFIG_ERROR

    print(json.dumps(config.masked(), indent=2))
    print(f"[OK] mode={config.mode.value} tenant={config.triskell.tenant} "
          f"account={config.triskell.api_account} ({account.user})")
    return 0


# ---------------------------------------------------------------------------
# triskell-bridge jobs
# ---------------------------------------------------------------------------

def cmd_jobs(args: argparse.Namespace) -> int:
    from triskell_bridge.bootstrap import EXIT_CONFIG_ERROR
    from triskell_bridge.engine.errors import ConfigError
    from triskell_bridge.process.jobs import DEFAULT_SCHEDULES

    try:
        config = _load(args)
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return EXIT_CONFIG_ERROR

    schedules = dict(DEFAULT_SCHEDULES)
    schedules.update({k: v for k, v in config.scheduler.jobs.items() if k in DEFAULT_SCHEDULES})
    whitelist = set(config.scheduler.test_jobs)

    for name, cron in schedules.items():
        marker = ""
        if config.mode.value == "development":
            marker = "  [test job]" if name in whitelist else "  [not started]"
        elif config.mode.value == "backup":
            marker = "  [disabled]"
        print(f"{name:<20} {cron}{marker}")
    return 0
