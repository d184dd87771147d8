"""Async fast-path client streaming from a remote completion API."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Protocol, Sequence

import anthropic
import httpx
from openai import AsyncOpenAI
from openai import APIError as OpenAIAPIError

from ..core.errors import InvocationCancelled, RemoteApiFailure
from .accumulator import ResponseAccumulator
from .ai_types import CancellationToken, ExecutionMode, HistoryTurn, InvocationOutcome, SnapshotListener

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a coding assistant working in the user's repository. Be concise."
PROVIDER_CHOICES: tuple[str, ...] = ("anthropic", "openai")
_REMOTE_ERRORS: tuple[type[BaseException], ...] = (anthropic.APIError, OpenAIAPIError, httpx.HTTPError)


@dataclass(slots=True)
class FastPathSettings:
    """Subset of settings required to configure the fast-path client."""

    api_key: str
    model: str = "claude-haiku-4-5-20251001"
    provider: str = "anthropic"
    base_url: str | None = None
    max_tokens: int = 4096
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    price_per_input_token: float = 0.00000025
    price_per_output_token: float = 0.00000125
    request_timeout: float | None = 90.0
    debug_logging: bool = False


@dataclass(slots=True)
class FastStreamEvent:
    """Normalized representation of streaming output."""

    type: str
    content: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionBackend(Protocol):
    """Provider-specific streaming call."""

    def stream(
        self,
        *,
        model: str,
        system: str,
        messages: Sequence[Mapping[str, str]],
        max_tokens: int,
    ) -> AsyncIterator[FastStreamEvent]:  # pragma: no cover - protocol stub
        ...


class AnthropicBackend:
    """Streams text deltas from the Anthropic Messages API."""

    def __init__(self, client: anthropic.AsyncAnthropic) -> None:
        self._client = client

    async def stream(
        self,
        *,
        model: str,
        system: str,
        messages: Sequence[Mapping[str, str]],
        max_tokens: int,
    ) -> AsyncIterator[FastStreamEvent]:
        async with self._client.messages.stream(
            model=model,
            max_tokens=max_tokens,
            system=system,
            messages=[dict(message) for message in messages],
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield FastStreamEvent(type="text.delta", content=text)
            final = await stream.get_final_message()
        usage = getattr(final, "usage", None)
        yield FastStreamEvent(
            type="usage",
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
        )

    async def aclose(self) -> None:
        await _close_quietly(self._client)


class OpenAIBackend:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def stream(
        self,
        *,
        model: str,
        system: str,
        messages: Sequence[Mapping[str, str]],
        max_tokens: int,
    ) -> AsyncIterator[FastStreamEvent]:
        payload_messages: List[Dict[str, str]] = [{"role": "system", "content": system}]
        payload_messages.extend(dict(message) for message in messages)
        async with self._client.chat.completions.stream(
            model=model,
            messages=payload_messages,  # type: ignore[arg-type]
            max_tokens=max_tokens,
            stream_options={"include_usage": True},
        ) as stream:
            async for event in stream:
                if getattr(event, "type", None) != "content.delta":
                    continue
                delta_text = getattr(event, "delta", None)
                if delta_text:
                    yield FastStreamEvent(type="text.delta", content=str(delta_text))
            completion = await stream.get_final_completion()
        usage = getattr(completion, "usage", None)
        yield FastStreamEvent(
            type="usage",
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    async def aclose(self) -> None:
        await _close_quietly(self._client)


def build_backend(settings: FastPathSettings) -> CompletionBackend:
    """Instantiate the SDK client for ``settings.provider`` with retries disabled."""

    timeout = httpx.Timeout(settings.request_timeout) if settings.request_timeout else None
    provider = (settings.provider or "anthropic").strip().lower()
    if provider == "anthropic":
        return AnthropicBackend(
            anthropic.AsyncAnthropic(api_key=settings.api_key, timeout=timeout, max_retries=0)
        )
    if provider == "openai":
        return OpenAIBackend(
            AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.base_url,
                timeout=timeout,
                max_retries=0,
            )
        )
    raise ValueError(f"Unknown fast-path provider: {settings.provider}")


def compute_cost(input_tokens: int, output_tokens: int, settings: FastPathSettings) -> float:
    return (
        input_tokens * settings.price_per_input_token
        + output_tokens * settings.price_per_output_token
    )


class FastPathClient:
    """Runs one streamed completion per message against the configured backend.

    Calls are not retried; upstream failures surface immediately as
    :class:`RemoteApiFailure`.
    """

    def __init__(
        self,
        settings: FastPathSettings,
        *,
        backend: CompletionBackend | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._backend = backend or build_backend(settings)
        self._clock = clock

    @property
    def settings(self) -> FastPathSettings:
        return self._settings

    async def complete(
        self,
        prompt: str,
        history: Sequence[HistoryTurn],
        *,
        listener: SnapshotListener | None = None,
        token: CancellationToken | None = None,
    ) -> InvocationOutcome:
        """Stream a reply to ``prompt`` following ``history`` (not mutated).

        Cancelling ``token`` aborts the stream and raises
        :class:`InvocationCancelled`.
        """

        messages = [turn.as_message() for turn in history]
        messages.append({"role": "user", "content": prompt})
        LOGGER.debug(
            "Starting fast-path completion via %s with %s message(s)",
            self._settings.model,
            len(messages),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(messages)

        accumulator = ResponseAccumulator(listener)
        started = self._clock()
        consume = asyncio.ensure_future(self._consume(messages, accumulator))

        def _abort(reason: str) -> None:
            consume.cancel()

        if token is not None:
            token.add_callback(_abort)
        try:
            input_tokens, output_tokens = await consume
        except asyncio.CancelledError:
            if token is None or not token.cancelled:
                raise
            LOGGER.info("Fast-path completion cancelled (%s)", token.reason)
            raise InvocationCancelled(f"Cancelled: {token.reason}") from None
        except _REMOTE_ERRORS as exc:
            LOGGER.warning("Fast-path completion failed: %s", exc)
            raise RemoteApiFailure(str(exc) or exc.__class__.__name__) from exc
        finally:
            if token is not None:
                token.remove_callback(_abort)

        elapsed_ms = int((self._clock() - started) * 1000)
        return InvocationOutcome(
            text=accumulator.snapshot(),
            duration_ms=elapsed_ms,
            cost_usd=compute_cost(input_tokens, output_tokens, self._settings),
            mode=ExecutionMode.FAST,
        )

    async def _consume(
        self, messages: Sequence[Mapping[str, str]], accumulator: ResponseAccumulator
    ) -> tuple[int, int]:
        input_tokens = output_tokens = 0
        async for event in self._backend.stream(
            model=self._settings.model,
            system=self._settings.system_prompt,
            messages=messages,
            max_tokens=self._settings.max_tokens,
        ):
            if event.type == "text.delta" and event.content:
                accumulator.append(event.content)
            elif event.type == "usage":
                input_tokens += event.input_tokens
                output_tokens += event.output_tokens
        return input_tokens, output_tokens

    def _log_prompt_payload(self, messages: Sequence[Mapping[str, Any]]) -> None:
        payload = {"model": self._settings.model, "system": self._settings.system_prompt, "messages": list(messages)}
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Fast-path payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Fast-path payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying SDK client to release network resources."""

        close = getattr(self._backend, "aclose", None)
        if close is None:
            return
        await close()


async def _close_quietly(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    try:
        result = close()
    except Exception as exc:  # pragma: no cover - defensive guard
        LOGGER.debug("SDK client close failed to start: %s", exc)
        return
    if inspect.isawaitable(result):
        await result


__all__ = [
    "AnthropicBackend",
    "CompletionBackend",
    "DEFAULT_SYSTEM_PROMPT",
    "FastPathClient",
    "FastPathSettings",
    "FastStreamEvent",
    "OpenAIBackend",
    "PROVIDER_CHOICES",
    "build_backend",
    "compute_cost",
]
