#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from typing import Any

from config.settings import settings
from telemetry.services.runtime import TelemetryRuntime
from telemetry.time_utils import format_timestamp, parse_timestamp


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Telemetry subscriber: prints merged live and historical updates for one device.",
    )
    parser.add_argument("device_id", help="Device to follow")
    parser.add_argument("--ws-url", default=settings.ws_url, help="Telemetry channel url")
    parser.add_argument("--api-base", default=settings.api_base, help="Historical query base url")
    parser.add_argument("--api-key", default=settings.api_key, help="API key for channel and history")
    parser.add_argument("--range", default="-1h", help="Historical backfill range, e.g. -1h, -24h, -7d")
    parser.add_argument("--no-spc", action="store_true", help="Hide SPC cycle samples")
    parser.add_argument("--raw", action="store_true", help="Print raw JSON events")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")
    return parser.parse_args()


def format_event(event: dict[str, Any]) -> str:
    event_type = event.get("type")
    if event_type == "series_update":
        latest = event.get("latest") or {}
        ts = format_timestamp(parse_timestamp(latest["timestamp"])) if latest.get("timestamp") else "-"
        zones = " ".join(f"{zone}={value}" for zone, value in (latest.get("temperatures") or {}).items())
        line = f"[{ts}] {latest.get('sourceType', '-')} {zones} oil={latest.get('oilTemp')}"
        if latest.get("cycleNumber") is not None:
            line += f" cycle={latest['cycleNumber']}"
        return line
    if event_type == "status_update":
        return f"[status] state={event.get('state')} code={event.get('code')} source={event.get('source')}"
    if event_type == "alert":
        return f"[alert:{event.get('severity')}] {event.get('message')}"
    if event_type == "connection":
        return f"[connection] {event.get('previous')} -> {event.get('status')} error={event.get('last_error') or '-'}"
    return f"[event:{event_type}] {event}"


async def run_subscriber(args: argparse.Namespace) -> None:
    config = replace(settings, ws_url=args.ws_url, api_base=args.api_base, api_key=args.api_key)
    runtime = TelemetryRuntime(config)

    try:
        if not await runtime.startup():
            print(f"[disconnected] {runtime.channel.state.last_error}; retrying in background")

        options = {"historical_range": args.range, "enable_spc": not args.no_spc}
        async with await runtime.subscribe(args.device_id, options) as handle:
            if handle.backfill is not None:
                result = await handle.backfill
                if result.ok:
                    print(f"[backfill] {args.range}: {result.received} rows, {result.retained} kept")
                else:
                    print(f"[backfill] failed: {result.error}")

            async for event in handle.updates():
                print(json.dumps(event, ensure_ascii=False, default=str) if args.raw else format_event(event))
    finally:
        await runtime.shutdown()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    try:
        asyncio.run(run_subscriber(args))
    except KeyboardInterrupt:
        print("\n[exit] stopped by user")


if __name__ == "__main__":
    main()
