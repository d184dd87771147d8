"""Tests for the worker subprocess supervisor."""

from __future__ import annotations

import asyncio
import logging
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from helpers import FakeProcess, FakeSpawner
from slackcc.ai.ai_types import CancellationToken, ExecutionMode
from slackcc.ai.worker import (
    WorkerSettings,
    WorkerState,
    WorkerSupervisor,
    build_worker_args,
    build_worker_env,
)
from slackcc.core.errors import (
    InvocationCancelled,
    WorkerNoResult,
    WorkerNonZeroExit,
    WorkerReportedError,
    WorkerSpawnFailure,
    WorkerTimeout,
)
from slackcc.utils.logging import WORKER_STDERR_LOGGER


def _settings(**overrides) -> WorkerSettings:
    defaults = dict(kill_grace_seconds=0.05, timeout_seconds=5.0, kill_process_group=False)
    defaults.update(overrides)
    return WorkerSettings(**defaults)


def _assistant(text: str) -> dict:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def _success(text: str | None, cost: float | None = None) -> dict:
    return {"type": "result", "subtype": "success", "result": text, "total_cost_usd": cost}


def test_build_worker_args_orders_flags_and_prompt() -> None:
    settings = WorkerSettings(model="m-1")

    assert build_worker_args(settings, "fix it", continue_session=False) == [
        "--dangerously-skip-permissions",
        "--model",
        "m-1",
        "--output-format",
        "stream-json",
        "--verbose",
        "-p",
        "fix it",
    ]
    continued = build_worker_args(settings, "more", continue_session=True)
    assert continued[-3:] == ["--continue", "-p", "more"]


def test_build_worker_env_strips_credentials() -> None:
    env = build_worker_env(
        {"PATH": "/bin", "ANTHROPIC_API_KEY": "secret", "CLAUDECODE": "1"},
        {"ANTHROPIC_API_KEY", "CLAUDECODE"},
    )

    assert env == {"PATH": "/bin"}


@pytest.mark.asyncio
async def test_run_streams_snapshots_and_reports_cost(tmp_path: Path) -> None:
    process = FakeProcess()
    spawner = FakeSpawner(process)
    supervisor = WorkerSupervisor(
        _settings(),
        spawn=spawner,
        environ={"PATH": "/usr/bin", "ANTHROPIC_API_KEY": "sk-ant-api-secret", "CLAUDECODE": "1"},
    )
    snapshots: list[str] = []
    process.emit({"type": "system", "subtype": "init"})
    process.emit(_assistant("Hel"))
    process.emit("plain diagnostic text")
    process.emit(_assistant("lo"))
    process.emit(_success("Hello", cost=0.0421))
    process.finish(0)

    outcome = await supervisor.run("say hi", cwd=tmp_path, listener=snapshots.append)
    await supervisor.aclose()

    assert outcome.text == "Hello"
    assert outcome.cost_usd == pytest.approx(0.0421)
    assert outcome.mode is ExecutionMode.FULL
    assert snapshots == ["Hel", "Hello"]
    args, kwargs = spawner.calls[0]
    assert args[0] == "claude"
    assert "--continue" not in args
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["env"] == {"PATH": "/usr/bin"}
    assert kwargs["stdin"] == asyncio.subprocess.DEVNULL


@pytest.mark.asyncio
async def test_result_without_text_falls_back_to_accumulated(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.emit(_assistant("streamed answer"))
    process.emit(_success(None))
    process.finish(0)

    outcome = await supervisor.run("q", cwd=tmp_path)

    assert outcome.text == "streamed answer"
    assert outcome.cost_usd is None


@pytest.mark.asyncio
async def test_continue_flag_is_forwarded(tmp_path: Path) -> None:
    process = FakeProcess()
    spawner = FakeSpawner(process)
    supervisor = WorkerSupervisor(_settings(), spawn=spawner, environ={})
    process.emit(_success("ok"))
    process.finish(0)

    await supervisor.run("next", cwd=tmp_path, continue_session=True)

    args, _ = spawner.calls[0]
    assert "--continue" in args


@pytest.mark.asyncio
async def test_error_event_fails_the_run(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.emit(_assistant("partial"))
    process.emit({"type": "result", "subtype": "error_during_execution", "is_error": True, "result": "boom"})
    process.finish(1)

    with pytest.raises(WorkerReportedError, match="boom"):
        await supervisor.run("q", cwd=tmp_path)


@pytest.mark.asyncio
async def test_nonzero_exit_with_text_is_soft_success(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.emit(_assistant("got this far"))
    process.finish(7)

    outcome = await supervisor.run("q", cwd=tmp_path)

    assert outcome.text == "got this far"
    assert outcome.cost_usd is None


@pytest.mark.asyncio
async def test_nonzero_exit_without_text_fails(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.emit_stderr("fatal: no credentials\n")
    process.finish(7)

    with caplog.at_level(logging.INFO), pytest.raises(WorkerNonZeroExit) as excinfo:
        await supervisor.run("q", cwd=tmp_path)

    assert str(excinfo.value) == "exit 7"
    assert excinfo.value.returncode == 7
    stderr_records = [record for record in caplog.records if record.name == WORKER_STDERR_LOGGER]
    assert [record.getMessage() for record in stderr_records] == ["fatal: no credentials"]
    assert stderr_records[0].worker_pid == process.pid


@pytest.mark.asyncio
async def test_clean_exit_without_any_output_fails(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.finish(0)

    with pytest.raises(WorkerNoResult):
        await supervisor.run("q", cwd=tmp_path)


@pytest.mark.asyncio
async def test_first_terminal_event_wins(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    process.emit(_success("first", cost=0.01))
    process.emit({"type": "result", "is_error": True, "result": "second"})
    process.emit(_success("third"))
    process.finish(3)

    outcome = await supervisor.run("q", cwd=tmp_path)

    assert outcome.text == "first"
    assert outcome.cost_usd == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_deadline_kills_worker_and_times_out(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(timeout_seconds=0.05), spawn=FakeSpawner(process), environ={})
    process.emit(_assistant("still thinking"))

    with pytest.raises(WorkerTimeout) as excinfo:
        await supervisor.run("q", cwd=tmp_path)

    assert process.killed is True
    assert excinfo.value.timeout_seconds == pytest.approx(0.05)


@pytest.mark.asyncio
async def test_exit_before_deadline_wins_while_stdout_drains(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(
        _settings(timeout_seconds=0.05, kill_grace_seconds=0.3), spawn=FakeSpawner(process), environ={}
    )
    process.exit_keeping_stdout_open(7)

    with pytest.raises(WorkerNonZeroExit, match="exit 7"):
        await supervisor.run("q", cwd=tmp_path)

    assert process.killed is False


def test_timeout_message_uses_minutes_for_whole_minutes() -> None:
    assert str(WorkerTimeout(300)) == "Timeout 5min"


@pytest.mark.asyncio
async def test_external_cancellation_kills_worker(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(), spawn=FakeSpawner(process), environ={})
    token = CancellationToken()

    running = asyncio.create_task(supervisor.run("q", cwd=tmp_path, token=token))
    await asyncio.sleep(0.01)
    token.cancel("shutdown")

    with pytest.raises(InvocationCancelled, match="shutdown"):
        await running
    assert process.killed is True


@pytest.mark.asyncio
async def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    spawner = FakeSpawner(error=FileNotFoundError("no such file: claude"))
    supervisor = WorkerSupervisor(_settings(), spawn=spawner, environ={})

    with pytest.raises(WorkerSpawnFailure, match="claude"):
        await supervisor.run("q", cwd=tmp_path)


@pytest.mark.asyncio
async def test_worker_still_running_after_success_is_reaped(tmp_path: Path) -> None:
    process = FakeProcess()
    supervisor = WorkerSupervisor(_settings(kill_grace_seconds=0.02), spawn=FakeSpawner(process), environ={})
    process.emit(_success("done"))

    outcome = await supervisor.run("q", cwd=tmp_path)
    assert process.returncode is None
    await supervisor.aclose()

    assert outcome.text == "done"
    assert process.killed is True


def test_worker_state_terminal_flags() -> None:
    assert WorkerState.SUCCEEDED.terminal
    assert WorkerState.TIMED_OUT.terminal
    assert not WorkerState.STREAMING.terminal


@pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shebang")
@pytest.mark.asyncio
async def test_real_child_process_round_trip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    script = tmp_path / "fake-worker"
    script.write_text(
        f"#!{sys.executable}\n"
        + textwrap.dedent(
            """
            import json
            import os
            import sys

            prompt = sys.argv[-1]
            leaked = "ANTHROPIC_API_KEY" in os.environ
            text = f"echo: {prompt} (continue={'--continue' in sys.argv}, leaked={leaked})"
            sys.stderr.write("debug noise\\n")
            print("booting", flush=True)
            print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}), flush=True)
            print(json.dumps({"type": "result", "subtype": "success", "result": text, "total_cost_usd": 0.5}), flush=True)
            """
        ),
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-api-should-not-leak")
    supervisor = WorkerSupervisor(
        WorkerSettings(binary=str(script), timeout_seconds=30.0, kill_grace_seconds=2.0),
    )

    outcome = await supervisor.run("hi", cwd=tmp_path, continue_session=True)
    await supervisor.aclose()

    assert outcome.text == "echo: hi (continue=True, leaked=False)"
    assert outcome.cost_usd == pytest.approx(0.5)
    assert os.environ["ANTHROPIC_API_KEY"] == "sk-ant-api-should-not-leak"
