"""Settings dataclass and environment loading."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping

from ..ai.client import DEFAULT_SYSTEM_PROMPT, PROVIDER_CHOICES, FastPathSettings
from ..ai.worker import WorkerSettings
from ..chat.commands import WorkingContext, parse_fast_prefixes, parse_working_contexts
from ..core.errors import ConfigurationMissing

__all__ = [
    "REQUIRED_ENV",
    "Settings",
    "is_fast_credential",
    "load_settings",
    "redact_secret",
    "redacted_settings",
    "validate_settings",
]

LOGGER = logging.getLogger(__name__)

REQUIRED_ENV: Mapping[str, str] = {
    "SLACK_BOT_TOKEN": "slack_bot_token",
    "SLACK_APP_TOKEN": "slack_app_token",
    "ALLOWED_USER_ID": "allowed_user_id",
    "WORKING_DIR": "working_dir",
}
_ENV_OVERRIDES: Mapping[str, str] = {
    **REQUIRED_ENV,
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "SLACKCC_OPENAI_BASE_URL": "openai_base_url",
    "SLACKCC_FAST_PROVIDER": "fast_provider",
    "SLACKCC_WORKER_BIN": "worker_bin",
    "SLACKCC_MODEL": "model",
    "SLACKCC_FAST_MODEL": "fast_model",
    "SLACKCC_FAST_PREFIXES": "fast_prefixes",
    "SLACKCC_WORKING_CONTEXTS": "working_contexts",
    "SLACKCC_SYSTEM_PROMPT": "system_prompt",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "SLACKCC_DEBUG": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "SLACKCC_WORKER_TIMEOUT": "worker_timeout",
    "SLACKCC_KILL_GRACE": "kill_grace",
    "SLACKCC_UPDATE_INTERVAL": "update_interval",
    "SLACKCC_REQUEST_TIMEOUT": "request_timeout",
    "SLACKCC_PRICE_INPUT": "price_per_input_token",
    "SLACKCC_PRICE_OUTPUT": "price_per_output_token",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "SLACKCC_MAX_MESSAGE_CHARS": "max_message_chars",
    "SLACKCC_HISTORY_LIMIT": "history_limit",
    "SLACKCC_MAX_TOKENS": "max_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_SECRET_FIELDS = ("slack_bot_token", "slack_app_token", "anthropic_api_key", "openai_api_key")
_ANTHROPIC_KEY_PREFIXES = ("sk-ant-api", "sk-ant-sid")


@dataclass(slots=True)
class Settings:
    """Deployment settings read from the environment at startup."""

    slack_bot_token: str = ""
    slack_app_token: str = ""
    allowed_user_id: str = ""
    working_dir: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str | None = None
    fast_provider: str = "anthropic"
    worker_bin: str = "claude"
    model: str = "claude-haiku-4-5-20251001"
    fast_model: str | None = None
    worker_timeout: float = 300.0
    kill_grace: float = 5.0
    update_interval: float = 0.6
    max_message_chars: int = 3800
    history_limit: int = 20
    max_tokens: int = 4096
    request_timeout: float = 90.0
    fast_prefixes: str = "quick:,fast:"
    working_contexts: str = ""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    price_per_input_token: float = 0.00000025
    price_per_output_token: float = 0.00000125
    debug_logging: bool = False

    @property
    def fast_api_key(self) -> str:
        if self.fast_provider == "openai":
            return self.openai_api_key
        return self.anthropic_api_key

    @property
    def fast_enabled(self) -> bool:
        return is_fast_credential(self.fast_provider, self.fast_api_key)

    def worker_settings(self) -> WorkerSettings:
        return WorkerSettings(
            binary=self.worker_bin,
            model=self.model,
            timeout_seconds=self.worker_timeout,
            kill_grace_seconds=self.kill_grace,
        )

    def fast_path_settings(self) -> FastPathSettings | None:
        """Return fast-path client settings, or ``None`` when not eligible."""

        if not self.fast_enabled:
            return None
        return FastPathSettings(
            api_key=self.fast_api_key,
            model=self.fast_model or self.model,
            provider=self.fast_provider,
            base_url=self.openai_base_url,
            max_tokens=self.max_tokens,
            system_prompt=self.system_prompt,
            price_per_input_token=self.price_per_input_token,
            price_per_output_token=self.price_per_output_token,
            request_timeout=self.request_timeout,
            debug_logging=self.debug_logging,
        )

    def contexts(self) -> tuple[WorkingContext, ...]:
        return parse_working_contexts(self.working_contexts)

    def prefixes(self) -> tuple[str, ...]:
        return parse_fast_prefixes(self.fast_prefixes)


def is_fast_credential(provider: str, api_key: str) -> bool:
    """Return whether ``api_key`` unlocks the fast path for ``provider``."""

    key = (api_key or "").strip()
    if not key:
        return False
    if provider == "anthropic":
        return key.startswith(_ANTHROPIC_KEY_PREFIXES)
    return provider in PROVIDER_CHOICES


def load_settings(
    environ: Mapping[str, str] | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    validate: bool = True,
) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``).

    Raises :class:`ConfigurationMissing` when ``validate`` is set and a
    required variable is absent.
    """

    env = os.environ if environ is None else environ
    settings = _apply_env_overrides(Settings(), env)
    if overrides:
        settings = _apply_overrides(settings, overrides, source="runtime")
    settings = _normalize(settings)
    if validate:
        validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    missing = [
        env_name
        for env_name, field_name in REQUIRED_ENV.items()
        if not str(getattr(settings, field_name) or "").strip()
    ]
    if missing:
        raise ConfigurationMissing(missing)
    # Surface malformed context lists at startup rather than per message.
    try:
        settings.contexts()
    except ValueError as exc:
        raise ConfigurationMissing([f"SLACKCC_WORKING_CONTEXTS ({exc})"]) from exc


def _apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip()
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid integer",
                env_name,
                value,
            )
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid float", env_name, value
            )
    if overrides:
        settings = _apply_overrides(settings, overrides, source="environment")
    return settings


def _apply_overrides(
    settings: Settings,
    overrides: Mapping[str, Any],
    *,
    source: str = "runtime",
) -> Settings:
    allowed = {field.name for field in fields(Settings)}
    filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
    if filtered:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        settings = replace(settings, **filtered)
    return settings


def _normalize(settings: Settings) -> Settings:
    provider = (settings.fast_provider or "anthropic").strip().lower()
    if provider not in PROVIDER_CHOICES:
        LOGGER.warning("Unknown fast provider %r; falling back to anthropic", settings.fast_provider)
        provider = "anthropic"
    return replace(
        settings,
        fast_provider=provider,
        fast_model=settings.fast_model or None,
        openai_base_url=settings.openai_base_url or None,
        worker_timeout=max(1.0, float(settings.worker_timeout)),
        kill_grace=max(0.0, float(settings.kill_grace)),
        update_interval=max(0.0, float(settings.update_interval)),
        max_message_chars=max(100, int(settings.max_message_chars)),
        history_limit=max(2, int(settings.history_limit)),
        max_tokens=max(1, int(settings.max_tokens)),
    )


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def redacted_settings(settings: Settings) -> dict[str, Any]:
    """Return ``settings`` as a dict with every secret redacted."""

    payload = asdict(settings)
    for name in _SECRET_FIELDS:
        payload[name] = redact_secret(payload.get(name) or "")
    payload["fast_enabled"] = settings.fast_enabled
    return payload
