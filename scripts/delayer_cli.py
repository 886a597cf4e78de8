#!/usr/bin/env python3
"""
Delayer CLI — enqueue payloads and run the poll loop from a shell.

Usage:
    python scripts/delayer_cli.py enqueue '{"a": 1}' --in 3600     # deliver in an hour
    python scripts/delayer_cli.py enqueue 'hello' --at 1767225600   # deliver at epoch
    python scripts/delayer_cli.py poll                             # run until Ctrl-C
    python scripts/delayer_cli.py poll --duration 60               # run for a minute

Queue and delivery settings come from config/settings.yaml (or DELAYER_CONFIG).
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import structlog

from config.settings import load_settings
from delivery.sinks import create_delivery
from job_queue.delayer import Delayer
from job_queue.errors import DeliveryError, QueueWriteError
from job_queue.gateway import create_queue_gateway
from utils.logging import configure_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delayed delivery on SQS")
    parser.add_argument("--config", help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    enqueue = sub.add_parser("enqueue", help="Schedule a payload")
    enqueue.add_argument("payload", help="Message body")
    when = enqueue.add_mutually_exclusive_group(required=True)
    when.add_argument("--at", type=int, dest="deliver_at", help="Delivery time, epoch seconds")
    when.add_argument("--in", type=int, dest="delay_seconds", help="Delivery delay, seconds from now")

    poll = sub.add_parser("poll", help="Run the poll loop")
    poll.add_argument("--duration", type=float, default=None,
                      help="Stop after this many seconds (default: run until interrupted)")
    return parser


def delivery_timestamp(args: argparse.Namespace) -> int:
    if args.deliver_at is not None:
        return args.deliver_at
    return round(time.time()) + args.delay_seconds


async def run_enqueue(delayer: Delayer, args: argparse.Namespace) -> int:
    try:
        message_id = await delayer.enqueue(args.payload, delivery_timestamp(args))
    except (QueueWriteError, DeliveryError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    print(message_id if message_id is not None else "delivered")
    return 0


async def run_poll(delayer: Delayer, args: argparse.Namespace) -> int:
    delayer.start_polling()
    try:
        if args.duration is None:
            await delayer.wait_stopped()
        else:
            await asyncio.sleep(args.duration)
    finally:
        await delayer.close()
    return 0


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    configure_logging(settings.logging.level, settings.logging.json)

    gateway = create_queue_gateway(settings.queue)
    delivery = create_delivery(settings.delivery)
    delayer = Delayer.from_config(
        gateway,
        delivery,
        lambda error: logger.error("delayer_error", error=str(error)),
        settings.polling,
    )

    try:
        if args.command == "enqueue":
            return await run_enqueue(delayer, args)
        return await run_poll(delayer, args)
    finally:
        await delivery.close()
        await gateway.close()


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)
