"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from slackcc.services.bridge_types import MessageHandle


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process`` driven by the test."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.killed = False
        self._exited = asyncio.Event()
        self._closed = False

    def emit(self, record: dict[str, Any] | str) -> None:
        line = record if isinstance(record, str) else json.dumps(record)
        self.stdout.feed_data((line + "\n").encode("utf-8"))

    def emit_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def finish(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        if not self._closed:
            self._closed = True
            self.stdout.feed_eof()
            self.stderr.feed_eof()
        self._exited.set()

    def exit_keeping_stdout_open(self, returncode: int) -> None:
        """Exit while a descendant still holds the stdout pipe."""

        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)


class FakeSpawner:
    def __init__(self, process: FakeProcess | None = None, error: BaseException | None = None) -> None:
        self.process = process
        self.error = error
        self.calls: list[tuple[tuple[str, ...], dict[str, Any]]] = []

    async def __call__(self, *args: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        assert self.process is not None
        return self.process


class FakeSurface:
    """Records every chat operation; failures are opt-in per operation."""

    def __init__(self) -> None:
        self.posts: list[tuple[str, str, str | None]] = []
        self.updates: list[tuple[MessageHandle, str]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.fail_post = False
        self.raise_on_update = False
        self.raise_on_react = False

    async def post_message(self, channel: str, text: str, *, thread_ts: str | None = None) -> MessageHandle | None:
        self.posts.append((channel, text, thread_ts))
        if self.fail_post:
            return None
        return MessageHandle(channel=channel, ts=f"reply-{len(self.posts)}")

    async def update_message(self, handle: MessageHandle, text: str) -> bool:
        if self.raise_on_update:
            raise RuntimeError("update exploded")
        self.updates.append((handle, text))
        return True

    async def add_reaction(self, channel: str, message_ts: str, name: str) -> bool:
        if self.raise_on_react:
            raise RuntimeError("reaction exploded")
        self.reactions.append((channel, message_ts, name))
        return True

    @property
    def last_update(self) -> str | None:
        return self.updates[-1][1] if self.updates else None


