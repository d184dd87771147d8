"""Chat bridge connecting inbound messages to worker and fast-path runs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from ..ai.ai_types import CancellationToken, ExecutionMode, InvocationOutcome
from ..ai.client import FastPathClient
from ..ai.worker import WorkerSupervisor
from ..chat.router import RouteDecision, SessionRouter
from ..chat.throttle import (
    DEFAULT_MAX_CHARS,
    DEFAULT_MIN_INTERVAL,
    UpdateThrottler,
    format_footer,
    truncate_tail,
)
from ..core.errors import InvocationError, RemoteApiFailure
from .bridge_types import ChatSurface, InboundMessage, MessageHandle

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "_..._"
RESET_REPLY = "Reset."
SUCCESS_REACTION = "white_check_mark"
FAILURE_REACTION = "x"


class ChatBridge:
    """Invocation boundary between the chat surface and the execution layer.

    Each accepted message runs as an independent task; messages for a busy
    conversation are not queued. Every invocation error is rendered as an
    ``Error: ...`` update plus a failure reaction and never escapes.
    """

    def __init__(
        self,
        router: SessionRouter,
        surface: ChatSurface,
        *,
        worker: WorkerSupervisor,
        fast_client: FastPathClient | None = None,
        allowed_user: str,
        reply_channel: str | None = None,
        update_interval: float = DEFAULT_MIN_INTERVAL,
        max_chars: int = DEFAULT_MAX_CHARS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self._surface = surface
        self._worker = worker
        self._fast_client = fast_client
        self._allowed_user = allowed_user
        self.reply_channel = reply_channel
        self._update_interval = update_interval
        self._max_chars = max_chars
        self._clock = clock
        self._tasks: set[asyncio.Task[Any]] = set()
        self._tokens: set[CancellationToken] = set()

    @property
    def worker(self) -> WorkerSupervisor:
        return self._worker

    @property
    def fast_client(self) -> FastPathClient | None:
        return self._fast_client

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def accepts(self, message: InboundMessage) -> bool:
        """Return whether ``message`` is a plain DM from the allowed user."""

        if message.channel_type != "im":
            return False
        if message.user != self._allowed_user:
            return False
        if message.subtype:
            return False
        return bool(message.text.strip())

    def dispatch(self, message: InboundMessage) -> asyncio.Task[InvocationOutcome | None] | None:
        """Start handling ``message`` in the background when it is accepted."""

        if not self.accepts(message):
            return None
        task = asyncio.create_task(self.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle(self, message: InboundMessage) -> InvocationOutcome | None:
        """Run one message to completion and return the outcome, if any."""

        key = message.conversation_key
        channel = self.reply_channel or message.channel
        decision = self._router.route(key, message.text)
        if decision.reset:
            await self._best_effort("post", self._surface.post_message(channel, RESET_REPLY, thread_ts=key))
            return None

        handle = await self._best_effort(
            "post", self._surface.post_message(channel, PLACEHOLDER_TEXT, thread_ts=key)
        )
        if handle is None:
            LOGGER.warning("Could not post placeholder for conversation %s; skipping", key)
            return None

        throttler = UpdateThrottler(
            self._live_sink(handle),
            min_interval=self._update_interval,
            max_chars=self._max_chars,
            clock=self._clock,
        )
        token = CancellationToken()
        self._tokens.add(token)
        try:
            outcome = await self._invoke(decision, throttler, token)
        except InvocationError as exc:
            LOGGER.info("Invocation failed for conversation %s: %s", key, exc)
            await self._report_failure(message, channel, handle, throttler, exc)
            return None
        except Exception as exc:
            LOGGER.exception("Unexpected error while handling conversation %s", key)
            await self._report_failure(message, channel, handle, throttler, exc)
            return None
        finally:
            self._tokens.discard(token)

        self._router.record_success(decision, outcome)
        final_text = truncate_tail(outcome.text, self._max_chars) + format_footer(
            outcome.duration_ms, outcome.cost_usd, outcome.mode
        )
        await throttler.flush(final_text)
        await self._best_effort(
            "react", self._surface.add_reaction(channel, message.ts, SUCCESS_REACTION)
        )
        LOGGER.info(
            "Conversation %s finished %s turn in %sms (cost=%s)",
            key,
            outcome.mode.value,
            outcome.duration_ms,
            outcome.cost_usd,
        )
        return outcome

    async def aclose(self) -> None:
        """Cancel in-flight invocations, killing any running workers."""

        for token in list(self._tokens):
            token.cancel("shutdown")
        tasks = list(self._tasks)
        if not tasks:
            return
        LOGGER.debug("Waiting for %s in-flight message task(s)", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=self._worker.settings.kill_grace_seconds + 1.0)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _invoke(
        self,
        decision: RouteDecision,
        throttler: UpdateThrottler,
        token: CancellationToken,
    ) -> InvocationOutcome:
        if decision.mode is ExecutionMode.FAST:
            if self._fast_client is None:
                raise RemoteApiFailure("Fast mode is not configured")
            return await self._fast_client.complete(
                decision.text, decision.history, listener=throttler.notify, token=token
            )
        return await self._worker.run(
            decision.text,
            cwd=self._router.working_dir_for(decision),
            continue_session=decision.continue_session,
            listener=throttler.notify,
            token=token,
        )

    async def _report_failure(
        self,
        message: InboundMessage,
        channel: str,
        handle: MessageHandle,
        throttler: UpdateThrottler,
        exc: BaseException,
    ) -> None:
        await throttler.flush(truncate_tail(f"Error: {exc}", self._max_chars))
        await self._best_effort(
            "react", self._surface.add_reaction(channel, message.ts, FAILURE_REACTION)
        )

    def _live_sink(self, handle: MessageHandle) -> Callable[[str], Awaitable[None]]:
        async def _update(text: str) -> None:
            await self._surface.update_message(handle, text)

        return _update

    async def _best_effort(self, label: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except Exception as exc:
            LOGGER.warning("Chat %s failed: %s", label, exc)
            return None


__all__ = [
    "ChatBridge",
    "FAILURE_REACTION",
    "PLACEHOLDER_TEXT",
    "RESET_REPLY",
    "SUCCESS_REACTION",
]
