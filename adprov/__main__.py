"""adprov command-line entry-point.

Usage:
    python -m adprov {compute,subscription,health-trigger} EVENT_FILE
    python -m adprov health-check --account-id ACCOUNT_ID

The first form replays a custom-resource event (JSON file, ``-`` for stdin)
through a lifecycle handler, exactly as the Lambda entry points would, and
prints the ``{"PhysicalResourceId", "Data"}`` result.  If the event carries a
``ResponseURL`` the response is PUT there as well.

The second form publishes the subscription health gauge once.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from adprov.core import configure_logging
from adprov.core.exceptions import ConfigError
from adprov.core.models import ProvisioningRequest


def _read_event(path: str) -> dict[str, Any]:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def main() -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    parser = argparse.ArgumentParser(
        prog="adprov",
        description="Managed Active Directory provisioning workflows.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("compute", "Run the compute provisioning workflow for one event."),
        ("subscription", "Run the subscription provisioning workflow for one event."),
        ("health-trigger", "Run the deploy-time health-check trigger for one event."),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("event_file", metavar="EVENT_FILE", help="JSON event file, or '-'.")

    health = commands.add_parser("health-check", help="Publish the subscription health gauge.")
    health.add_argument("--account-id", required=True, help="Account to check.")

    args = parser.parse_args()

    try:
        configure_logging(level=args.log_level, fmt=args.log_format, force=True)
    except ValueError as exc:
        print(f"adprov: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)

    # Lazy import keeps `--help` fast and free of boto3 start-up cost.
    from adprov.orchestrator.runner import (  # noqa: PLC0415
        HANDLER_BUILDERS,
        load_settings,
        run_health_check,
        run_lifecycle,
    )

    try:
        if args.command == "health-check":
            sample = asyncio.run(run_health_check(load_settings(), args.account_id))
            output: dict[str, Any] = {"Status": sample.status.value, "Value": sample.value}
        else:
            request = ProvisioningRequest.from_event(_read_event(args.event_file))
            output = asyncio.run(run_lifecycle(HANDLER_BUILDERS[args.command], request))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted — exiting.")
        sys.exit(130)

    print(json.dumps(output, indent=2))  # noqa: T201


if __name__ == "__main__":
    main()
