"""Execution layer: worker supervision, fast-path client and stream parsing."""

from .accumulator import ResponseAccumulator
from .ai_types import CancellationToken, ExecutionMode, HistoryTurn, InvocationOutcome
from .client import FastPathClient, FastPathSettings
from .worker import WorkerSettings, WorkerSupervisor

__all__ = [
    "CancellationToken",
    "ExecutionMode",
    "FastPathClient",
    "FastPathSettings",
    "HistoryTurn",
    "InvocationOutcome",
    "ResponseAccumulator",
    "WorkerSettings",
    "WorkerSupervisor",
]
