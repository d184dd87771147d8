"""Rate-limited forwarding of live response snapshots to the chat surface."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..ai.ai_types import ExecutionMode

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."
DEFAULT_MAX_CHARS = 3800
DEFAULT_MIN_INTERVAL = 0.6

UpdateSink = Callable[[str], Awaitable[None]]


def truncate_tail(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Keep the most recent ``max_chars`` characters, marker included."""

    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return TRUNCATION_MARKER + (text[-keep:] if keep else "")


def format_elapsed(duration_ms: int) -> str:
    if duration_ms < 60_000:
        return f"{duration_ms / 1000:.1f}s"
    minutes, remainder = divmod(duration_ms, 60_000)
    return f"{minutes}m{remainder // 1000}s"


def format_footer(
    duration_ms: int, cost_usd: float | None, mode: ExecutionMode = ExecutionMode.FULL
) -> str:
    """Metadata suffix appended to the final reply.

    Fast replies always carry their cost; full replies omit a zero cost.
    """

    show_cost = cost_usd is not None and (bool(cost_usd) or mode is ExecutionMode.FAST)
    cost = f" ${cost_usd:.4f}" if show_cost else ""
    return f"\n\n_{format_elapsed(duration_ms)}{cost} · reply to continue · reset_"


class UpdateThrottler:
    """Forward snapshots at most once per ``min_interval`` seconds.

    Identical snapshots are dropped. At most one update is in flight; while it
    is being delivered, newer accepted snapshots collapse into a single pending
    value. :meth:`flush` waits for in-flight delivery, then always sends the
    final text, so the consumer's last observed value is the final one.
    """

    def __init__(
        self,
        sink: UpdateSink,
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        max_chars: int = DEFAULT_MAX_CHARS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._min_interval = max(0.0, min_interval)
        self._max_chars = max_chars
        self._clock = clock
        self._last_forwarded: str | None = None
        self._last_at: float | None = None
        self._pending: str | None = None
        self._sender: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def last_forwarded(self) -> str | None:
        return self._last_forwarded

    def notify(self, snapshot: str) -> bool:
        """Offer ``snapshot`` for delivery; return whether it was accepted."""

        if self._closed:
            return False
        text = truncate_tail(snapshot, self._max_chars)
        if text == self._last_forwarded:
            return False
        now = self._clock()
        if self._last_at is not None and now - self._last_at < self._min_interval:
            return False
        self._last_forwarded = text
        self._last_at = now
        self._pending = text
        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._drain())
        return True

    async def flush(self, final_text: str) -> None:
        """Deliver ``final_text`` unconditionally after any in-flight update."""

        self._closed = True
        self._pending = None
        if self._sender is not None:
            await asyncio.gather(self._sender, return_exceptions=True)
        self._last_forwarded = final_text
        self._last_at = self._clock()
        await self._deliver(final_text)

    def close(self) -> None:
        """Stop accepting snapshots without sending anything further."""

        self._closed = True
        self._pending = None

    async def _drain(self) -> None:
        while self._pending is not None:
            text, self._pending = self._pending, None
            await self._deliver(text)

    async def _deliver(self, text: str) -> None:
        try:
            await self._sink(text)
        except Exception as exc:
            LOGGER.debug("Live update failed: %s", exc)


__all__ = [
    "DEFAULT_MAX_CHARS",
    "DEFAULT_MIN_INTERVAL",
    "TRUNCATION_MARKER",
    "UpdateSink",
    "UpdateThrottler",
    "format_elapsed",
    "format_footer",
    "truncate_tail",
]
