"""
Run one participant process.

Usage:
    python -m ticketflow payment
    python -m ticketflow passenger --passenger-id 1 --name Alice
    python -m ticketflow transport --trip-id 101 --status DELAYED
    python -m ticketflow admin --backend memory
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from ticketflow.bus.delivery import ExhaustedAction
from ticketflow.exceptions import TicketFlowError
from ticketflow.service import (
    BACKENDS,
    ServiceConfig,
    configure_logging,
    create_broker,
    run_service,
)
from ticketflow.topics import Role

logger = logging.getLogger("ticketflow")

PROCESS_ROLES = [role.value for role in Role if role is not Role.EXTERNAL]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ticketflow",
        description="Run one participant of the smart ticketing saga.",
    )
    parser.add_argument("role", choices=PROCESS_ROLES, help="Participant role to run.")
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default=None,
        help="Broker backend (default: TICKETFLOW_BACKEND or kafka).",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=None,
        help="Grace period in seconds for in-flight handlers.",
    )
    parser.add_argument(
        "--on-exhausted",
        choices=[a.value for a in ExhaustedAction],
        default=None,
        help="What to do once a handler exhausted its retries.",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO).")
    parser.add_argument("--passenger-id", default="1", help="Passenger id to register.")
    parser.add_argument("--name", default="Alice", help="Passenger name to register.")
    parser.add_argument("--trip-id", default="101", help="Trip id to update.")
    parser.add_argument("--status", default="DELAYED", help="New trip status.")
    return parser


def _entity_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    role = Role(args.role)

    try:
        config = ServiceConfig.from_env(
            role,
            backend=args.backend,
            shutdown_timeout=args.shutdown_timeout,
            on_exhausted=ExhaustedAction(args.on_exhausted) if args.on_exhausted else None,
            log_level=args.log_level,
        )
    except ValueError as e:
        print(f"ticketflow: {e}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)
    stimulus = {
        "passenger_id": _entity_id(args.passenger_id),
        "name": args.name,
        "trip_id": _entity_id(args.trip_id),
        "status": args.status,
    }

    try:
        asyncio.run(run_service(role, create_broker(config), config=config, stimulus=stimulus))
    except TicketFlowError as e:
        logger.error("Participant failed", extra={"role": role.value, "error": str(e)})
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
