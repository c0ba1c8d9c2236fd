"""Tests for the interactive session state machine."""

import asyncio

import pytest

from fakes import FakeProcessRunner, Script
from forgefuzz.config import FuzzCampaignConfig, RuntimeConfig
from forgefuzz.orchestration.main import RecoveryAction, WorkflowOrchestrator
from forgefuzz.orchestration.session import (
    CLOSE_PROMPT,
    InteractiveSession,
    SessionError,
    SessionState,
)
from forgefuzz.storage.models import CampaignReport, FuzzTargetDescriptor, WorkflowStage
from forgefuzz.tools.coordinator import BufferSink


def _runner(tmp_path, crash=False):
    fuzzing_dir = FuzzCampaignConfig().output_path(tmp_path)
    run_stdout = f"[+] running fuzzer: {fuzzing_dir}/fuzzA\n"
    if crash:
        run_stdout += f"[+] Found crash file: {fuzzing_dir}/fuzzA-output/crash-1\n"
    return FakeProcessRunner(
        {
            "find-fuzz-tests": Script(stdout="debug:fuzzA\n"),
            "build-fuzz-tests": Script(stdout="[+] built fuzzer: fuzzA\n"),
            "run-fuzz-tests": Script(stdout=run_stdout),
        }
    )


def _session(tmp_path, runner, **kwargs):
    orchestrator = WorkflowOrchestrator(RuntimeConfig(workspace_root=tmp_path), runner=runner)
    sink = BufferSink()
    return InteractiveSession(orchestrator, sink, tmp_path, "image", **kwargs), sink


class ScriptedOrchestrator:
    """Stands in for WorkflowOrchestrator where the session needs fine control."""

    def __init__(self, body):
        self.runtime = RuntimeConfig()
        self.body = body

    async def execute(self, workspace, container_ref, sink=None, progress=None):
        return await self.body(sink)


def test_successful_campaign_awaits_close(tmp_path):
    session, sink = _session(tmp_path, _runner(tmp_path))
    assert session.state is SessionState.IDLE

    state = asyncio.run(session.open())

    assert state is SessionState.AWAITING_CLOSE
    assert session.outcome is SessionState.COMPLETED_SUCCESS
    assert session.report.executed_count == 1
    assert sink.text.startswith("CodeForge: Starting fuzzing workflow...\nContainer: image\n")
    assert "[5%] Discovering fuzz targets..." in sink.text
    assert "Fuzzing completed successfully. 1 fuzzer(s) executed." in sink.text
    assert sink.text.rstrip().endswith(CLOSE_PROMPT)


def test_crashes_complete_as_failure(tmp_path):
    session, sink = _session(tmp_path, _runner(tmp_path, crash=True))

    asyncio.run(session.open())

    assert session.state is SessionState.AWAITING_CLOSE
    assert session.outcome is SessionState.COMPLETED_FAILURE
    assert "Fuzzing completed with 1 crash(es) found!" in sink.text


def test_orchestrator_error_completes_as_failure(tmp_path):
    runner = FakeProcessRunner({"find-fuzz-tests": Script(stdout="", exit_code=0)})
    session, sink = _session(tmp_path, runner)

    asyncio.run(session.open())

    assert session.state is SessionState.AWAITING_CLOSE
    assert session.outcome is SessionState.COMPLETED_FAILURE
    assert "Fuzzing failed: No fuzz targets found" in sink.text
    assert session.error is not None


def test_zero_target_report_completes_as_failure():
    async def _empty(sink):
        return CampaignReport(workspace="/ws", stage=WorkflowStage.DONE)

    session = InteractiveSession(ScriptedOrchestrator(_empty), BufferSink(), "/ws", "image")
    asyncio.run(session.open())

    assert session.outcome is SessionState.COMPLETED_FAILURE


def test_input_ignored_until_campaign_finishes(tmp_path):
    seen = []

    async def _body(sink):
        session.handle_input("q")
        seen.append(session.state)
        return CampaignReport(
            workspace="/ws",
            stage=WorkflowStage.DONE,
            discovered_targets=(FuzzTargetDescriptor("debug", "x"),),
            executed_fuzzers=["x"],
        )

    session = InteractiveSession(ScriptedOrchestrator(_body), BufferSink(), "/ws", "image")
    session.handle_input("q")
    assert session.state is SessionState.IDLE

    asyncio.run(session.open())

    assert seen == [SessionState.RUNNING]
    assert session.state is SessionState.AWAITING_CLOSE


def test_keypress_closes_once_with_exit_code_zero(tmp_path):
    session, _ = _session(tmp_path, _runner(tmp_path))
    closes = []
    session.on_close(closes.append)
    asyncio.run(session.open())

    session.handle_input("x")
    session.handle_input("y")

    assert session.state is SessionState.CLOSED
    assert session.exit_code == 0
    assert closes == [0]


def test_open_twice_raises(tmp_path):
    session, _ = _session(tmp_path, _runner(tmp_path))
    asyncio.run(session.open())

    with pytest.raises(SessionError):
        asyncio.run(session.open())


def test_close_from_idle_is_silent():
    session = InteractiveSession(ScriptedOrchestrator(None), BufferSink(), "/ws", "image")
    session.close()

    assert session.state is SessionState.CLOSED
    session.write("late output")
    assert session.sink.text == ""


def test_close_while_running_drops_output_and_stays_closed():
    async def _body(sink):
        sink.write("before\n")
        session.close()
        sink.write("after\n")
        return CampaignReport(workspace="/ws", stage=WorkflowStage.DONE)

    out = BufferSink()
    session = InteractiveSession(ScriptedOrchestrator(_body), out, "/ws", "image")
    closes = []
    session.on_close(closes.append)

    state = asyncio.run(session.open())

    assert state is SessionState.CLOSED
    assert session.outcome is None
    assert "before" in out.text
    assert "after" not in out.text
    assert CLOSE_PROMPT not in out.text
    assert closes == []


def test_session_retries_through_prompt(tmp_path):
    runner = _runner(tmp_path)
    runner.scripts["find-fuzz-tests"] = [
        Script(stderr="flaky\n", exit_code=1),
        Script(stdout="debug:fuzzA\n"),
    ]
    attempts = []

    def _prompt(error, attempt):
        attempts.append(attempt)
        return RecoveryAction.RETRY

    session, sink = _session(tmp_path, runner, prompt=_prompt)
    asyncio.run(session.open())

    assert attempts == [1]
    assert session.outcome is SessionState.COMPLETED_SUCCESS
    assert "Fuzzing workflow failed" in sink.text
