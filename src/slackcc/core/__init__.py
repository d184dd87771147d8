"""Core domain types shared by every layer.

Currently this only hosts the error taxonomy used at the invocation boundary.
"""

from .errors import (
    ConfigurationMissing,
    InvocationCancelled,
    InvocationError,
    RemoteApiFailure,
    SlackCCError,
    WorkerNoResult,
    WorkerNonZeroExit,
    WorkerReportedError,
    WorkerSpawnFailure,
    WorkerTimeout,
)

__all__ = [
    "ConfigurationMissing",
    "InvocationCancelled",
    "InvocationError",
    "RemoteApiFailure",
    "SlackCCError",
    "WorkerNoResult",
    "WorkerNonZeroExit",
    "WorkerReportedError",
    "WorkerSpawnFailure",
    "WorkerTimeout",
]
