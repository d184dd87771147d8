"""Tests for live-update throttling and reply formatting."""

from __future__ import annotations

import asyncio

import pytest

from slackcc.ai.ai_types import ExecutionMode
from slackcc.chat.throttle import (
    TRUNCATION_MARKER,
    UpdateThrottler,
    format_elapsed,
    format_footer,
    truncate_tail,
)


class _RecordingSink:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, text: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.sent.append(text)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_truncate_tail_keeps_most_recent_characters() -> None:
    assert truncate_tail("short", 10) == "short"
    text = "x" * 50 + "TAIL"

    truncated = truncate_tail(text, 20)

    assert len(truncated) == 20
    assert truncated.startswith(TRUNCATION_MARKER)
    assert truncated.endswith("TAIL")


def test_format_elapsed_switches_to_minutes() -> None:
    assert format_elapsed(1500) == "1.5s"
    assert format_elapsed(59_949) == "59.9s"
    assert format_elapsed(125_000) == "2m5s"


def test_format_footer_includes_cost_when_known() -> None:
    assert format_footer(1500, 0.0123) == "\n\n_1.5s $0.0123 · reply to continue · reset_"
    assert format_footer(1500, None) == "\n\n_1.5s · reply to continue · reset_"


def test_format_footer_always_prices_fast_replies() -> None:
    assert format_footer(800, 0.0, ExecutionMode.FAST) == "\n\n_0.8s $0.0000 · reply to continue · reset_"
    assert format_footer(800, 0.0, ExecutionMode.FULL) == "\n\n_0.8s · reply to continue · reset_"


@pytest.mark.asyncio
async def test_notify_respects_minimum_interval(fake_clock) -> None:
    sink = _RecordingSink()
    throttler = UpdateThrottler(sink, min_interval=0.6, clock=fake_clock)

    assert throttler.notify("a") is True
    fake_clock.advance(0.3)
    assert throttler.notify("ab") is False
    fake_clock.advance(0.4)
    assert throttler.notify("abc") is True
    await _settle()

    assert sink.sent == ["a", "abc"]
    assert throttler.last_forwarded == "abc"


@pytest.mark.asyncio
async def test_identical_snapshots_are_not_resent(fake_clock) -> None:
    sink = _RecordingSink()
    throttler = UpdateThrottler(sink, min_interval=0.0, clock=fake_clock)

    assert throttler.notify("same") is True
    assert throttler.notify("same") is False
    await _settle()

    assert sink.sent == ["same"]


@pytest.mark.asyncio
async def test_flush_delivers_final_text_last(fake_clock) -> None:
    sink = _RecordingSink()
    sink.gate = asyncio.Event()
    throttler = UpdateThrottler(sink, min_interval=0.6, clock=fake_clock)

    throttler.notify("partial")
    await _settle()
    fake_clock.advance(1.0)
    throttler.notify("partial and more")

    flushing = asyncio.create_task(throttler.flush("final"))
    await _settle()
    sink.gate.set()
    await flushing

    assert sink.sent[0] == "partial"
    assert sink.sent[-1] == "final"
    assert "partial and more" not in sink.sent
    assert throttler.notify("late snapshot") is False


@pytest.mark.asyncio
async def test_flush_sends_even_when_interval_not_elapsed(fake_clock) -> None:
    sink = _RecordingSink()
    throttler = UpdateThrottler(sink, min_interval=10.0, clock=fake_clock)

    throttler.notify("one")
    await _settle()
    await throttler.flush("one")

    assert sink.sent == ["one", "one"]


@pytest.mark.asyncio
async def test_sink_failures_are_swallowed(fake_clock) -> None:
    async def _broken(text: str) -> None:
        raise RuntimeError(f"cannot send {text}")

    throttler = UpdateThrottler(_broken, min_interval=0.0, clock=fake_clock)

    throttler.notify("x")
    await _settle()
    await throttler.flush("done")

    assert throttler.last_forwarded == "done"


@pytest.mark.asyncio
async def test_snapshots_are_truncated_before_delivery(fake_clock) -> None:
    sink = _RecordingSink()
    throttler = UpdateThrottler(sink, min_interval=0.0, max_chars=10, clock=fake_clock)

    throttler.notify("0123456789abcdef")
    await _settle()

    assert sink.sent == ["...9abcdef"]
