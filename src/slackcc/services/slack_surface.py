"""Slack implementation of the chat surface."""

from __future__ import annotations

import asyncio
import logging

import aiohttp
from slack_sdk.errors import SlackApiError, SlackClientError
from slack_sdk.web.async_client import AsyncWebClient
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .bridge_types import MessageHandle

LOGGER = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    SlackClientError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


class SlackSurface:
    """Best-effort chat operations on top of ``slack_sdk``'s async client.

    Failures are logged and reported through the return value only.
    """

    def __init__(
        self,
        client: AsyncWebClient,
        *,
        open_attempts: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
    ) -> None:
        self._client = client
        self._open_attempts = max(1, open_attempts)
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds

    async def post_message(
        self, channel: str, text: str, *, thread_ts: str | None = None
    ) -> MessageHandle | None:
        try:
            response = await self._client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=text)
        except _TRANSIENT_ERRORS as exc:
            LOGGER.warning("post err: %s", _describe(exc))
            return None
        return MessageHandle(channel=str(response.get("channel") or channel), ts=str(response["ts"]))

    async def update_message(self, handle: MessageHandle, text: str) -> bool:
        try:
            await self._client.chat_update(channel=handle.channel, ts=handle.ts, text=text)
        except _TRANSIENT_ERRORS as exc:
            LOGGER.debug("update err: %s", _describe(exc))
            return False
        return True

    async def add_reaction(self, channel: str, message_ts: str, name: str) -> bool:
        try:
            await self._client.reactions_add(channel=channel, timestamp=message_ts, name=name)
        except _TRANSIENT_ERRORS as exc:
            LOGGER.debug("reaction err: %s", _describe(exc))
            return False
        return True

    async def open_direct_channel(self, user_id: str) -> str | None:
        """Resolve the DM channel with ``user_id``, retrying transient failures."""

        retrying = AsyncRetrying(
            reraise=False,
            stop=stop_after_attempt(self._open_attempts),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.conversations_open(users=user_id)
        except RetryError as exc:
            LOGGER.warning("Unable to open DM channel: %s", _describe(exc.last_attempt.exception()))
            return None
        channel = response.get("channel") or {}
        return channel.get("id")


def _describe(exc: BaseException | None) -> str:
    if isinstance(exc, SlackApiError):
        return str(exc.response.get("error") or exc)
    return str(exc)


__all__ = ["SlackSurface"]
