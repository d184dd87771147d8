"""Parsing helpers for inbound chat messages."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

_RESET_RE = re.compile(r"^reset\b", re.IGNORECASE)
DEFAULT_FAST_PREFIXES: tuple[str, ...] = ("quick:", "fast:")


@dataclass(slots=True, frozen=True)
class WorkingContext:
    """Named alternate working directory for full-mode invocations."""

    name: str
    path: Path


def is_reset_command(text: str) -> bool:
    """Return ``True`` when ``text`` starts with the reset verb."""

    return bool(_RESET_RE.match((text or "").strip()))


def split_fast_prefix(text: str, prefixes: Iterable[str] = DEFAULT_FAST_PREFIXES) -> str | None:
    """Return the text after a fast-mode prefix, or ``None`` when absent.

    Prefixes match case-insensitively at the start of the message. A prefix
    with nothing after it does not count.
    """

    candidate = (text or "").lstrip()
    lowered = candidate.lower()
    for prefix in prefixes:
        marker = prefix.strip().lower()
        if not marker or not lowered.startswith(marker):
            continue
        remainder = candidate[len(marker) :].strip()
        return remainder or None
    return None


def parse_fast_prefixes(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_FAST_PREFIXES
    prefixes = tuple(item.strip() for item in raw.split(",") if item.strip())
    return prefixes or DEFAULT_FAST_PREFIXES


def parse_working_contexts(raw: str | None) -> tuple[WorkingContext, ...]:
    """Parse ``name=/path,other=/path`` into ordered working contexts."""

    if not raw:
        return ()
    contexts: list[WorkingContext] = []
    seen: set[str] = set()
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ValueError(f"Working context '{entry}' must use NAME=PATH syntax.")
        name, path = (part.strip() for part in entry.split("=", 1))
        if not name or not path:
            raise ValueError(f"Working context '{entry}' is missing a name or path.")
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        contexts.append(WorkingContext(name=name, path=Path(path).expanduser()))
    return tuple(contexts)


def match_working_context(
    text: str, contexts: Iterable[WorkingContext] | Mapping[str, Path]
) -> WorkingContext | None:
    """Return the first configured context whose name appears in ``text``.

    Names match case-insensitively on word boundaries, so ``api`` matches
    "fix the api tests" but not "rapid". Configuration order decides ties.
    """

    if isinstance(contexts, Mapping):
        contexts = [WorkingContext(name=name, path=Path(path)) for name, path in contexts.items()]
    haystack = text or ""
    for context in contexts:
        pattern = rf"(?<![\w-]){re.escape(context.name)}(?![\w-])"
        if re.search(pattern, haystack, re.IGNORECASE):
            return context
    return None


__all__ = [
    "DEFAULT_FAST_PREFIXES",
    "WorkingContext",
    "is_reset_command",
    "match_working_context",
    "parse_fast_prefixes",
    "parse_working_contexts",
    "split_fast_prefix",
]
