#!/usr/bin/env python3
"""Passive probe for the tram location push channel.

Connects with pytram's ChannelClient, prints every parsed location update
and error event, pings periodically and prints a summary on exit.

Use this to check update cadence and payload shape of a live server.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pytram import ChannelClient, LocationUpdate, TramConfig, TramError  # noqa: E402


@dataclass
class ProbeStats:
    started_at: float
    total_updates: int = 0
    total_errors: int = 0
    disconnects: int = 0
    first_update_at: float | None = None
    last_update_at: float | None = None
    min_gap_s: float | None = None
    max_gap_s: float | None = None

    def on_update(self, now: float) -> float | None:
        delta = None if self.last_update_at is None else now - self.last_update_at
        self.total_updates += 1
        if self.first_update_at is None:
            self.first_update_at = now
        self.last_update_at = now
        if delta is not None:
            self.min_gap_s = delta if self.min_gap_s is None else min(self.min_gap_s, delta)
            self.max_gap_s = delta if self.max_gap_s is None else max(self.max_gap_s, delta)
        return delta


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Passive probe for the tram location push channel.",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="WebSocket address (default: TRAM_SERVER_ADDRESS or ws://localhost:3000).",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--ping-seconds",
        type=int,
        default=30,
        help="Send an application ping every N seconds (0 = never).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Pretty-print each parsed update as JSON.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _print_summary(stats: ProbeStats) -> None:
    runtime = time.time() - stats.started_at
    print("[probe] Summary")
    print(f"[probe]   runtime_s     : {runtime:.1f}")
    print(f"[probe]   total_updates : {stats.total_updates}")
    print(f"[probe]   total_errors  : {stats.total_errors}")
    print(f"[probe]   disconnects   : {stats.disconnects}")
    if stats.min_gap_s is not None and stats.max_gap_s is not None:
        print(f"[probe]   gap_min_s     : {stats.min_gap_s:.1f}")
        print(f"[probe]   gap_max_s     : {stats.max_gap_s:.1f}")


async def _run(args: argparse.Namespace, stats: ProbeStats) -> None:
    overrides = {"server_address": args.server} if args.server else {}
    config = TramConfig.from_env(**overrides)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    def on_update(update: LocationUpdate) -> None:
        now = time.time()
        delta = stats.on_update(now)
        gap_text = "first" if delta is None else f"{delta:.1f}s"
        point = update.current
        print(
            f"[probe] update#{stats.total_updates} gap={gap_text} source={update.source} "
            f"status={update.status} lat={point.latitude:.6f} lon={point.longitude:.6f} t={point.timestamp}",
        )
        if args.json:
            print(json.dumps(update.model_dump(mode="json"), indent=2, sort_keys=True))

    def on_connection_change(connected: bool) -> None:
        if not connected:
            stats.disconnects += 1
        print(f"[probe] connected={connected}")

    def on_error(error: TramError) -> None:
        stats.total_errors += 1
        print(f"[probe] error: {type(error).__name__}: {error}")

    print(f"[probe] Connecting to {config.server_address} ...")
    async with ChannelClient(config) as channel:
        channel.on_update(on_update)
        channel.on_connection_change(on_connection_change)
        channel.on_error(on_error)
        if channel.is_healthy():
            print("[probe] Connected.")

        last_ping = time.time()
        while not stop.is_set():
            now = time.time()
            if args.duration > 0 and (now - stats.started_at) >= args.duration:
                print(f"[probe] Reached --duration={args.duration}s, stopping.")
                break
            if args.ping_seconds > 0 and (now - last_ping) >= args.ping_seconds:
                channel.ping()
                last_ping = now
            try:
                await asyncio.wait_for(stop.wait(), timeout=1.0)
            except TimeoutError:
                pass


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    stats = ProbeStats(started_at=time.time())
    try:
        asyncio.run(_run(args, stats))
    except TramError as exc:
        print(f"[probe] Failed: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        pass

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
