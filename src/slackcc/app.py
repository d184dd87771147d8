"""Application bootstrap for the Slack bridge."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, Union, get_args, get_origin, get_type_hints

from dotenv import load_dotenv
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp

from .ai.client import FastPathClient
from .ai.worker import WorkerSupervisor
from .chat.router import SessionRouter
from .chat.session_store import SessionStore
from .core.errors import ConfigurationMissing
from .services.bridge import ChatBridge
from .services.bridge_types import ChatSurface, InboundMessage
from .services.settings import Settings, load_settings, redacted_settings
from .services.slack_surface import SlackSurface
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def build_bridge(
    settings: Settings,
    surface: ChatSurface,
    *,
    worker: WorkerSupervisor | None = None,
    fast_client: FastPathClient | None = None,
) -> ChatBridge:
    """Wire the router, session store and execution paths for ``settings``."""

    fast_settings = settings.fast_path_settings()
    if fast_client is None and fast_settings is not None:
        fast_client = FastPathClient(fast_settings)
    router = SessionRouter(
        SessionStore(history_limit=settings.history_limit),
        fast_enabled=fast_client is not None,
        default_working_dir=Path(settings.working_dir).expanduser(),
        working_contexts=settings.contexts(),
        fast_prefixes=settings.prefixes(),
    )
    return ChatBridge(
        router,
        surface,
        worker=worker or WorkerSupervisor(settings.worker_settings()),
        fast_client=fast_client,
        allowed_user=settings.allowed_user_id,
        update_interval=settings.update_interval,
        max_chars=settings.max_message_chars,
    )


def register_handlers(bolt_app: AsyncApp, bridge: ChatBridge) -> None:
    """Route Slack ``message`` events into ``bridge``."""

    @bolt_app.event("message")
    async def _on_message(event: Dict[str, Any]) -> None:
        bridge.dispatch(InboundMessage.from_event(event))


async def run_bridge(settings: Settings) -> None:
    """Connect over Socket Mode and serve until cancelled."""

    bolt_app = AsyncApp(token=settings.slack_bot_token, logger=logging.getLogger("slack_bolt"))
    surface = SlackSurface(bolt_app.client)
    bridge = build_bridge(settings, surface)
    register_handlers(bolt_app, bridge)
    handler = AsyncSocketModeHandler(bolt_app, settings.slack_app_token)

    if bridge.fast_client is not None:
        _LOGGER.info("Fast mode enabled via %s (prefixes: %s)", settings.fast_provider, ", ".join(settings.prefixes()))
    else:
        _LOGGER.info("Fast mode disabled; every message runs the worker subprocess")

    await handler.connect_async()
    bridge.reply_channel = await surface.open_direct_channel(settings.allowed_user_id)
    _LOGGER.info("slackcc running dm=%s", bridge.reply_channel)
    try:
        await asyncio.Event().wait()
    finally:
        await bridge.aclose()
        await bridge.worker.aclose()
        if bridge.fast_client is not None:
            await bridge.fast_client.aclose()
        with contextlib.suppress(Exception):
            await handler.close_async()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``slackcc`` console script."""

    args = _parse_cli_args(argv)
    if args.env_file:
        load_dotenv(args.env_file, override=False)
    else:
        load_dotenv(override=False)

    debug = args.debug or _env_flag("SLACKCC_DEBUG", default=False)
    configure_logging(debug)

    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    try:
        settings = load_settings(overrides=cli_overrides or None, validate=not args.dump_settings)
    except ConfigurationMissing as exc:
        _LOGGER.error("%s", exc)
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc

    if args.dump_settings:
        _dump_settings(settings, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    try:
        asyncio.run(run_bridge(settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="slackcc",
        description="Bridge Slack direct messages to a coding assistant.",
    )
    parser.add_argument("--env-file", metavar="PATH", help="Load environment variables from PATH.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting after environment loading (repeatable).",
    )
    return parser.parse_args(argv)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and target is not str:
        return None
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or (origin is not None and type(None) in get_args(annotation)):
        candidates = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(candidates) == 1:
            return candidates[0]
    return annotation


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot interpret '{value}' as a boolean.")


def _dump_settings(
    settings: Settings,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": redacted_settings(settings), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("SLACKCC_"))


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
