#!/usr/bin/env python3
"""Headless document pool watcher.

Runs the sync engine without the HTTP surface. Every applied snapshot is
logged and, when ``--output`` is given, written as JSON so other tools can
pick it up.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from dashboard.main import configure_logging
from dashboard.utils.config import get_settings
from dashboard.utils.helpers import dump_json, snapshot_payload, summarize
from dashboard.utils.postgrest_client import create_client
from domains.document_pool.engine import PoolSnapshot, create_engine
from domains.document_pool.notifier import ErrorNotice


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(
        description="Watch the document pool and keep a snapshot JSON file current.",
    )
    parser.add_argument(
        "--page",
        type=int,
        default=0,
        help="Merged page to keep loaded (default: 0).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Where to write the latest snapshot (skipped when omitted).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Load a single snapshot and exit.",
    )
    parser.add_argument(
        "--log-events",
        action="store_true",
        help="Log every forwarded change notification.",
    )

    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    client = create_client(settings)
    await client.connect()

    engine = create_engine(settings, client, log_events=args.log_events)
    output_file = args.output.expanduser().resolve() if args.output else None

    def on_snapshot(snapshot: PoolSnapshot) -> None:
        logger.success(f"Snapshot {snapshot.cycle} - {summarize(snapshot)}")
        if output_file is not None:
            dump_json(output_file, snapshot_payload(snapshot))

    def on_notice(notice: ErrorNotice) -> None:
        print(f"[{notice.raised_at:%H:%M:%S}] {notice.message}", file=sys.stderr)

    engine.add_snapshot_listener(on_snapshot)
    engine.notifier.add_listener(on_notice)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    try:
        engine.start(page_index=args.page)
        if args.once:
            await engine.wait_until_settled()
            return 0 if engine.snapshot is not None else 1

        await stop_event.wait()
        logger.info("Received signal, shutting down.")
        return 0
    finally:
        await engine.stop()
        await client.close()
        logger.info("Pool watcher stopped.")


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    configure_logging(get_settings().log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":  # pragma: no cover - CLI bridge
    sys.exit(main())
