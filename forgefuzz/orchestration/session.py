"""
Interactive fuzzing session.

Streams campaign output to a terminal-like sink and decides when the session
may be closed. The user can only close it by pressing a key once the campaign
has finished; the host can close it at any time.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..storage.models import CampaignReport
from ..tools.coordinator import OutputSink
from ..tools.process_runner import container_ref_for
from .main import RecoveryPrompt, WorkflowOrchestrator

logger = logging.getLogger(__name__)

CLOSE_PROMPT = "Press any key to close terminal..."

CloseListener = Callable[[int], None]


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED_SUCCESS = "completed_success"
    COMPLETED_FAILURE = "completed_failure"
    AWAITING_CLOSE = "awaiting_close"
    CLOSED = "closed"


class SessionError(RuntimeError):
    pass


class InteractiveSession:
    """
    One fuzzing run bound to one output sink.

    States:
        IDLE -> RUNNING -> COMPLETED_SUCCESS | COMPLETED_FAILURE
             -> AWAITING_CLOSE -> CLOSED
    ``close()`` jumps to CLOSED from anywhere.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        sink: OutputSink,
        workspace: Optional[Path] = None,
        container_ref: Optional[str] = None,
        prompt: Optional[RecoveryPrompt] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.sink = sink
        self.workspace = Path(workspace or orchestrator.runtime.workspace_root)
        self.container_ref = (
            container_ref
            or orchestrator.runtime.container_ref
            or container_ref_for(self.workspace)
        )
        self.prompt = prompt
        self.state = SessionState.IDLE
        self.outcome: Optional[SessionState] = None  # COMPLETED_SUCCESS or COMPLETED_FAILURE
        self.exit_code: Optional[int] = None
        self.report: Optional[CampaignReport] = None
        self.error: Optional[Exception] = None
        self._close_listeners: list[CloseListener] = []

    def on_close(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    # OutputSink
    def write(self, text: str) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.sink.write(text)

    def _line(self, message: str) -> None:
        self.write(f"{message}\n")

    def _progress(self, percent: int, message: str) -> None:
        self._line(f"[{percent}%] {message}")

    async def open(self) -> SessionState:
        """Run the campaign. Returns the state reached once it has finished."""
        if self.state is not SessionState.IDLE:
            raise SessionError(f"Session already opened (state: {self.state.value})")

        self.state = SessionState.RUNNING
        started = time.monotonic()
        self._line("CodeForge: Starting fuzzing workflow...")
        self._line(f"Container: {self.container_ref}\n")

        try:
            if self.prompt is not None:
                report = await self.orchestrator.execute_with_retry(
                    self.workspace,
                    self.container_ref,
                    sink=self,
                    progress=self._progress,
                    prompt=self.prompt,
                )
            else:
                report = await self.orchestrator.execute(
                    self.workspace,
                    self.container_ref,
                    sink=self,
                    progress=self._progress,
                )
        except Exception as e:
            logger.warning("Fuzzing session failed: %s", e)
            self.error = e
            if self.state is SessionState.CLOSED:
                return self.state
            self._line(f"\nFuzzing failed: {e}")
            self._complete(SessionState.COMPLETED_FAILURE)
            return self.state

        self.report = report
        if self.state is SessionState.CLOSED:
            return self.state

        duration = time.monotonic() - started
        if report.discovered_count == 0:
            self._line("\nFuzzing failed: no fuzz targets found")
            self._complete(SessionState.COMPLETED_FAILURE)
        elif report.has_crashes:
            self._line(
                f"\nFuzzing completed with {len(report.crashes)} crash(es) found! "
                f"Duration: {duration:.2f}s"
            )
            self._complete(SessionState.COMPLETED_FAILURE)
        else:
            self._line(
                f"\nFuzzing completed successfully. {report.executed_count} fuzzer(s) "
                f"executed. Duration: {duration:.2f}s"
            )
            self._complete(SessionState.COMPLETED_SUCCESS)
        return self.state

    def _complete(self, outcome: SessionState) -> None:
        self.state = outcome
        self.outcome = outcome
        self.state = SessionState.AWAITING_CLOSE
        self._line(f"\n{CLOSE_PROMPT}")

    def handle_input(self, data: str) -> None:
        """Any key closes the session once the campaign is over."""
        if self.state is not SessionState.AWAITING_CLOSE:
            return
        self.state = SessionState.CLOSED
        self.exit_code = 0
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            listener(0)

    def close(self) -> None:
        """Host-initiated close. Silent, and final."""
        self.state = SessionState.CLOSED
        self._close_listeners = []
