"""CLI tools for test sends, reading replay and connection checks."""

import argparse
import asyncio
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import get_settings
from .logging import setup_logging
from .main import RelayService
from .models import SampleKind
from .sources import InMemorySampleSource


def parse_reading(line: str) -> tuple[SampleKind, float, datetime | None]:
    """Parse one JSON line ``{"type", "value", "timestamp"?}`` into reading parts.

    Raises:
        ValueError: If the line is not a valid reading.
    """
    record: dict[str, Any] = json.loads(line)
    if not isinstance(record, dict):
        raise ValueError(f"Expected a JSON object, got {type(record).__name__}")
    kind = SampleKind(record["type"])
    value = float(record["value"])
    ts = record.get("timestamp")
    timestamp = datetime.fromtimestamp(float(ts), tz=UTC) if ts is not None else None
    return kind, value, timestamp


async def _send_test() -> int:
    settings = get_settings()
    setup_logging(settings.app)

    service = RelayService(settings)
    try:
        if not await service.connect():
            print(f"Connection failed: {service.last_alert}", file=sys.stderr)
            return 1
        ok = await service.send_test_data()
        print(service.last_alert)
        return 0 if ok else 1
    finally:
        await service.stop()


def send_test() -> None:
    """CLI entry point for a one-shot test send.

    Usage:
        health-relay-send-test
    """
    argparse.ArgumentParser(description="Send one test heart-rate sample").parse_args()
    sys.exit(asyncio.run(_send_test()))


async def _replay_readings(path: Path, dry_run: bool) -> int:
    """Replay recorded readings through the streaming pipeline."""
    settings = get_settings()
    setup_logging(settings.app)

    errors = 0
    readings = []
    with path.open(encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                readings.append(parse_reading(line))
            except (ValueError, KeyError) as e:
                errors += 1
                print(f"Line {number}: {e}", file=sys.stderr)

    if dry_run:
        print(f"Dry run: {len(readings)} readings would be replayed, {errors} invalid")
        return 0

    source = InMemorySampleSource()
    service = RelayService(settings, source=source)
    try:
        await service.collector.request_authorization()
        if not await service.start_monitoring():
            print(f"Could not start monitoring: {service.last_alert}", file=sys.stderr)
            return 1

        for kind, value, timestamp in readings:
            source.record(kind, value, timestamp)
        await service.collector.flush()

        sent = service.collector.total_data_points_sent
        print(f"Replayed {len(readings)} readings: {sent} sent, {errors} invalid")
        return 0 if sent == len(readings) else 1
    finally:
        await service.stop()


def replay() -> None:
    """CLI entry point for reading replay.

    Usage:
        health-relay-replay readings.jsonl [--dry-run]
    """
    parser = argparse.ArgumentParser(
        description="Replay recorded readings (JSON lines) through the relay"
    )
    parser.add_argument("path", type=Path, help="JSON lines file of readings")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Just parse and count readings without sending",
    )
    args = parser.parse_args()

    if not args.path.exists():
        print(f"Error: {args.path} does not exist", file=sys.stderr)
        sys.exit(1)

    sys.exit(asyncio.run(_replay_readings(args.path, args.dry_run)))


async def _check_connection(format_json: bool) -> int:
    settings = get_settings()
    setup_logging(settings.app)

    service = RelayService(settings)
    try:
        await service.connect()
        if format_json:
            print(json.dumps(service.status_snapshot(), indent=2))
        else:
            print(service.check_connection())
            for label, value in service.status.debug_rows():
                print(f"  {label}: {value}")
        return 0 if service.connection.is_connected else 1
    finally:
        await service.stop()


def check_connection() -> None:
    """CLI entry point for a connection check.

    Usage:
        health-relay-check [--json]
    """
    parser = argparse.ArgumentParser(description="Check the relay connection")
    parser.add_argument(
        "--json",
        action="store_true",
        dest="format_json",
        help="Output the status snapshot as JSON",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(_check_connection(args.format_json)))
