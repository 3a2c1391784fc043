"""Tests for CLI helpers."""

from datetime import UTC, datetime

import pytest

from health_relay import cli
from health_relay.models import SampleKind


def test_parse_reading_with_timestamp():
    kind, value, timestamp = cli.parse_reading(
        '{"type": "steps", "value": 120, "timestamp": 1705314600}'
    )

    assert kind == SampleKind.STEPS
    assert value == 120.0
    assert timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


def test_parse_reading_without_timestamp():
    assert cli.parse_reading('{"type": "heart_rate", "value": 64}') == (
        SampleKind.HEART_RATE,
        64.0,
        None,
    )


@pytest.mark.parametrize(
    "line",
    ['{"type": "blood_pressure", "value": 1}', '{"value": 1}', "not json", "[1]", "5"],
)
def test_parse_reading_rejects_invalid(line):
    with pytest.raises((ValueError, KeyError)):
        cli.parse_reading(line)


@pytest.mark.asyncio
async def test_replay_dry_run_counts_lines(tmp_path, monkeypatch, capsys, settings):
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    path = tmp_path / "readings.jsonl"
    path.write_text(
        '{"type": "heart_rate", "value": 70}\n'
        "\n"
        '{"type": "steps", "value": 10}\n'
        '{"type": "unknown", "value": 1}\n'
        "[1]\n",
        encoding="utf-8",
    )

    assert await cli._replay_readings(path, dry_run=True) == 0

    out = capsys.readouterr().out
    assert "Dry run: 2 readings would be replayed, 2 invalid" in out
