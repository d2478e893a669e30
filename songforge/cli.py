"""Operator commands for fulfilling, inspecting and re-notifying orders."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
import json
import sys

from songforge.config import load_config
from songforge.db import init_db
from songforge.logging import configure_logging
from songforge.orchestrator.errors import OrchestratorError
from songforge.orchestrator.runtime import OrchestratorRuntime, build_runtime
from songforge.schemas import (
    FanOutResponse,
    FulfillmentStatusResponse,
    NotificationDispatchResponse,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="songforge",
        description="SongForge generation orchestrator operations",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    fulfill = subcommands.add_parser("fulfill", help="Start generation for a paid order")
    fulfill.add_argument("order_id", type=int)
    fulfill.add_argument(
        "--wait",
        action="store_true",
        help="Stay attached until every locally tracked job has finished",
    )

    diagnose = subcommands.add_parser("diagnose", help="Show generation and notification state")
    diagnose.add_argument("order_id", type=int)

    resend = subcommands.add_parser(
        "resend-notification",
        help="Send the result email again for a settled order",
    )
    resend.add_argument("order_id", type=int)
    resend.add_argument(
        "--force",
        action="store_true",
        help="Send even if the customer was already notified",
    )
    return parser


async def _fulfill(runtime: OrchestratorRuntime, order_id: int, *, wait: bool) -> int:
    result = await runtime.aggregator.fan_out(order_id)
    if wait:
        await runtime.aggregator.join()
    print(FanOutResponse.model_validate(result).model_dump_json(indent=2))
    return 0


async def _diagnose(runtime: OrchestratorRuntime, order_id: int) -> int:
    order = await runtime.store.get_order(order_id)
    jobs = await runtime.store.list_jobs(order_id)
    print(FulfillmentStatusResponse.from_snapshots(order, jobs).model_dump_json(indent=2))
    return 0


async def _resend(runtime: OrchestratorRuntime, order_id: int, *, force: bool) -> int:
    result = await runtime.aggregator.resend_notification(order_id, force=force)
    print(NotificationDispatchResponse.model_validate(result).model_dump_json(indent=2))
    return 0 if result.success else 1


async def _run(args: argparse.Namespace, runtime: OrchestratorRuntime) -> int:
    await asyncio.to_thread(init_db)
    try:
        if args.command == "fulfill":
            return await _fulfill(runtime, args.order_id, wait=args.wait)
        if args.command == "diagnose":
            return await _diagnose(runtime, args.order_id)
        return await _resend(runtime, args.order_id, force=args.force)
    except OrchestratorError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}), file=sys.stderr)
        return 2
    finally:
        await runtime.aggregator.flush_notifications()
        # Jobs still open here are picked up by the next server start.
        await runtime.shutdown()


def _cli(argv: Sequence[str] | None = None, *, runtime: OrchestratorRuntime | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config()
    configure_logging(config.logging.level)
    return asyncio.run(_run(args, runtime or build_runtime(config)))


def main() -> None:
    raise SystemExit(_cli())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
