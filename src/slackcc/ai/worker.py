"""Supervisor for the tool-capable worker subprocess (full mode)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..core.errors import (
    InvocationCancelled,
    InvocationError,
    WorkerNoResult,
    WorkerNonZeroExit,
    WorkerReportedError,
    WorkerSpawnFailure,
    WorkerTimeout,
)
from ..utils.logging import log_worker_stderr
from .accumulator import ResponseAccumulator
from .ai_types import CancellationToken, ExecutionMode, InvocationOutcome, SnapshotListener
from .stream_parser import AssistantText, LineFramer, ResultError, ResultSuccess, decode_lines

LOGGER = logging.getLogger(__name__)

_DEADLINE_REASON = "deadline"
DEFAULT_STRIPPED_ENV: frozenset[str] = frozenset({"ANTHROPIC_API_KEY", "CLAUDECODE"})

SpawnFn = Callable[..., Awaitable[Any]]


@dataclass(slots=True)
class WorkerSettings:
    """Static configuration for worker invocations."""

    binary: str = "claude"
    model: str = "claude-haiku-4-5-20251001"
    timeout_seconds: float = 300.0
    kill_grace_seconds: float = 5.0
    permission_args: tuple[str, ...] = ("--dangerously-skip-permissions",)
    stripped_env: frozenset[str] = field(default_factory=lambda: DEFAULT_STRIPPED_ENV)
    stderr_preview_chars: int = 200
    read_chunk_size: int = 64 * 1024
    kill_process_group: bool = True


class WorkerState(str, Enum):
    """Lifecycle of a single worker invocation."""

    STARTING = "starting"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in {WorkerState.SUCCEEDED, WorkerState.FAILED, WorkerState.TIMED_OUT}


def build_worker_args(settings: WorkerSettings, prompt: str, *, continue_session: bool) -> list[str]:
    """Return the worker argument vector (without the binary)."""

    args = [
        *settings.permission_args,
        "--model",
        settings.model,
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    if continue_session:
        args.append("--continue")
    args.extend(["-p", prompt])
    return args


def build_worker_env(base: Mapping[str, str], stripped: frozenset[str] | set[str]) -> dict[str, str]:
    """Copy ``base`` without the credential and nesting marker variables."""

    return {key: value for key, value in base.items() if key not in stripped}


class WorkerSupervisor:
    """Starts worker processes and resolves each run to one outcome."""

    def __init__(
        self,
        settings: WorkerSettings | None = None,
        *,
        spawn: SpawnFn | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or WorkerSettings()
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._environ = environ
        self._clock = clock
        self._reapers: set[asyncio.Task[None]] = set()

    @property
    def settings(self) -> WorkerSettings:
        return self._settings

    async def run(
        self,
        prompt: str,
        *,
        cwd: Path | str,
        continue_session: bool = False,
        listener: SnapshotListener | None = None,
        token: CancellationToken | None = None,
    ) -> InvocationOutcome:
        """Run one worker invocation and return its outcome.

        Raises an :class:`InvocationError` subclass on spawn failure, timeout,
        explicit error events, or a failed exit without any text.
        """

        worker_run = WorkerRun(
            self,
            prompt,
            cwd=Path(cwd),
            continue_session=continue_session,
            listener=listener,
            token=token,
        )
        return await worker_run.execute()

    async def aclose(self) -> None:
        """Wait for processes that are still being reaped after success."""

        if not self._reapers:
            return
        await asyncio.gather(*list(self._reapers), return_exceptions=True)

    def _track_reaper(self, task: asyncio.Task[None]) -> None:
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)


class WorkerRun:
    """State machine for a single worker process.

    The run settles exactly once. Result events, process exit, the deadline
    and external cancellation all race to settle it; every path after the
    first is a no-op.
    """

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        prompt: str,
        *,
        cwd: Path,
        continue_session: bool,
        listener: SnapshotListener | None,
        token: CancellationToken | None,
    ) -> None:
        self._supervisor = supervisor
        self._settings = supervisor.settings
        self._prompt = prompt
        self._cwd = cwd
        self._continue_session = continue_session
        self._listener = listener
        self._external_token = token
        self._token = CancellationToken()
        self._accumulator = ResponseAccumulator(self._forward_snapshot)
        self._stdout_framer = LineFramer()
        self._stderr_framer = LineFramer()
        self._process: Any = None
        self._future: asyncio.Future[InvocationOutcome] | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._started_at = 0.0
        self.state = WorkerState.STARTING

    async def execute(self) -> InvocationOutcome:
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._started_at = self._supervisor._clock()
        settings = self._settings
        args = build_worker_args(settings, self._prompt, continue_session=self._continue_session)
        base_env = self._supervisor._environ if self._supervisor._environ is not None else os.environ
        LOGGER.debug(
            "Starting worker %s in %s (continue=%s)", settings.binary, self._cwd, self._continue_session
        )
        try:
            self._process = await self._supervisor._spawn(
                settings.binary,
                *args,
                cwd=str(self._cwd),
                env=build_worker_env(base_env, settings.stripped_env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=settings.kill_process_group,
            )
        except OSError as exc:
            self.state = WorkerState.FAILED
            raise WorkerSpawnFailure(f"Failed to start {settings.binary}: {exc}") from exc

        self.state = WorkerState.STREAMING
        self._token.add_callback(self._on_cancel)
        if self._external_token is not None:
            self._external_token.add_callback(self._token.cancel)
        self._deadline = loop.call_later(settings.timeout_seconds, self._token.cancel, _DEADLINE_REASON)
        stdout_task = asyncio.create_task(self._pump_stdout())
        stderr_task = asyncio.create_task(self._pump_stderr())
        exit_task = asyncio.create_task(self._watch_exit(stdout_task))
        try:
            return await self._future
        except asyncio.CancelledError:
            self._future.cancel()
            if not self.state.terminal:
                self.state = WorkerState.FAILED
            raise
        finally:
            self._deadline.cancel()
            if self._external_token is not None:
                self._external_token.remove_callback(self._token.cancel)
            for task in (stdout_task, stderr_task, exit_task):
                task.cancel()
            await asyncio.gather(stdout_task, stderr_task, exit_task, return_exceptions=True)
            self._finish_process()

    # ------------------------------------------------------------------
    # Stream pumps
    # ------------------------------------------------------------------

    async def _pump_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(self._settings.read_chunk_size)
            if not chunk:
                break
            self._handle_lines(self._stdout_framer.feed(chunk))
        tail = self._stdout_framer.flush()
        if tail:
            self._handle_lines([tail])

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        preview = self._settings.stderr_preview_chars
        pid = getattr(self._process, "pid", None)
        while True:
            chunk = await stream.read(self._settings.read_chunk_size)
            if not chunk:
                break
            for line in self._stderr_framer.feed(chunk):
                if line.strip():
                    log_worker_stderr(pid, line[:preview])
        tail = self._stderr_framer.flush()
        if tail and tail.strip():
            log_worker_stderr(pid, tail[:preview])

    async def _watch_exit(self, stdout_task: asyncio.Task[None]) -> None:
        returncode = await self._process.wait()
        # An exit observed before the deadline decides the outcome.
        if self._deadline is not None:
            self._deadline.cancel()
        # Drain buffered stdout before judging the exit status.
        await asyncio.wait({stdout_task}, timeout=self._settings.kill_grace_seconds)
        if self._settled:
            return
        text = self._accumulator.snapshot()
        if text:
            if returncode:
                LOGGER.info("Worker exited with code %s after producing text; keeping it", returncode)
            self._settle_success(text, cost_usd=None)
        elif returncode:
            self._settle_failure(WorkerNonZeroExit(returncode), WorkerState.FAILED)
        else:
            self._settle_failure(WorkerNoResult(), WorkerState.FAILED)

    def _handle_lines(self, lines: Sequence[str]) -> None:
        for event in decode_lines(lines):
            if self._settled:
                return
            if isinstance(event, AssistantText):
                self._accumulator.append(event.fragments)
            elif isinstance(event, ResultSuccess):
                self._settle_success(event.text or self._accumulator.snapshot(), cost_usd=event.cost_usd)
            elif isinstance(event, ResultError):
                self._settle_failure(WorkerReportedError(event.message), WorkerState.FAILED)

    def _forward_snapshot(self, snapshot: str) -> None:
        if self._listener is None:
            return
        try:
            self._listener(snapshot)
        except Exception:  # pragma: no cover - listener errors are best-effort
            LOGGER.debug("Snapshot listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    @property
    def _settled(self) -> bool:
        return self._future is None or self._future.done()

    def _settle_success(self, text: str, *, cost_usd: float | None) -> bool:
        if self._settled:
            return False
        assert self._future is not None
        elapsed_ms = int((self._supervisor._clock() - self._started_at) * 1000)
        self.state = WorkerState.SUCCEEDED
        self._future.set_result(
            InvocationOutcome(text=text, duration_ms=elapsed_ms, cost_usd=cost_usd, mode=ExecutionMode.FULL)
        )
        return True

    def _settle_failure(self, error: InvocationError, state: WorkerState) -> bool:
        if self._settled:
            return False
        assert self._future is not None
        self.state = state
        self._future.set_exception(error)
        return True

    def _on_cancel(self, reason: str) -> None:
        if self._settled:
            return
        self._kill()
        if reason == _DEADLINE_REASON:
            LOGGER.warning("Worker exceeded %.0fs deadline; killed", self._settings.timeout_seconds)
            self._settle_failure(WorkerTimeout(self._settings.timeout_seconds), WorkerState.TIMED_OUT)
        else:
            self._settle_failure(InvocationCancelled(f"Cancelled: {reason}"), WorkerState.FAILED)

    # ------------------------------------------------------------------
    # Process teardown
    # ------------------------------------------------------------------

    def _finish_process(self) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        if self.state is WorkerState.SUCCEEDED:
            # Let a worker that already reported success exit on its own first.
            task = asyncio.create_task(self._reap(graceful=True))
        else:
            self._kill()
            task = asyncio.create_task(self._reap(graceful=False))
        self._supervisor._track_reaper(task)

    async def _reap(self, *, graceful: bool) -> None:
        grace = self._settings.kill_grace_seconds
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass
        if graceful:
            LOGGER.debug("Worker still running %.1fs after its result; killing", grace)
            self._kill()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._process.wait(), timeout=grace)
                return
        LOGGER.warning("Worker pid %s did not exit after SIGKILL", getattr(self._process, "pid", "?"))

    def _kill(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        pid = getattr(process, "pid", None)
        if self._settings.kill_process_group and isinstance(pid, int) and pid > 0 and hasattr(os, "killpg"):
            try:
                os.killpg(pid, signal.SIGKILL)
                return
            except (ProcessLookupError, PermissionError):
                pass
        with contextlib.suppress(ProcessLookupError):
            process.kill()


__all__ = [
    "DEFAULT_STRIPPED_ENV",
    "WorkerRun",
    "WorkerSettings",
    "WorkerState",
    "WorkerSupervisor",
    "build_worker_args",
    "build_worker_env",
]
