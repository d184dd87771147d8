"""Error taxonomy for the Slack bridge."""

from __future__ import annotations

from typing import Sequence


class SlackCCError(RuntimeError):
    """Base class for every error raised by the bridge."""


class ConfigurationMissing(SlackCCError):
    """Raised at startup when required settings are absent."""

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(f"Missing required settings: {', '.join(self.missing)}")


class InvocationError(SlackCCError):
    """Failure of a single worker or fast-path invocation.

    Invocation errors are caught at the bridge boundary and rendered to the
    chat surface; they never terminate the process.
    """


class WorkerSpawnFailure(InvocationError):
    """The worker binary could not be started."""


class WorkerTimeout(InvocationError):
    """The worker produced no terminal event before its deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timeout {_format_seconds(timeout_seconds)}")


class WorkerNonZeroExit(InvocationError):
    """The worker exited with a non-zero status and produced no text."""

    def __init__(self, returncode: int | None) -> None:
        self.returncode = returncode
        super().__init__(f"exit {returncode}")


class WorkerNoResult(InvocationError):
    """The worker exited cleanly without a result event or any text."""

    def __init__(self) -> None:
        super().__init__("worker exited without a result")


class WorkerReportedError(InvocationError):
    """The worker emitted an explicit error result."""


class RemoteApiFailure(InvocationError):
    """The remote completion API call failed or was rejected."""


class InvocationCancelled(InvocationError):
    """The invocation was cancelled before it produced a result."""


def _format_seconds(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}min"
    return f"{seconds:g}s"
