"""
Shared plumbing for the build and run coordinators.

A coordinator spawns exactly one container process, forwards every output
chunk to an ``OutputSink`` as it arrives and keeps a full copy of both streams
for parsing once the process exits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol

from ..storage.local_store import CampaignStore
from ..storage.models import DiagnosticContext, RunContext
from .process_runner import ProcessRunner, RunOptions

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    def write(self, text: str) -> None: ...


class NullSink:
    def write(self, text: str) -> None:
        pass


class BufferSink:
    """Collects everything written to it. Handy for tests and reports."""

    def __init__(self) -> None:
        self.chunks: list[str] = []

    def write(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class CoordinatorError(RuntimeError):
    """Base for coordinator failures that carry a partial result."""

    def __init__(
        self,
        message: str,
        result: object = None,
        diagnostic: Optional[DiagnosticContext] = None,
    ) -> None:
        super().__init__(message)
        self.result = result
        self.diagnostic = diagnostic


class BuildError(CoordinatorError):
    """Every requested target failed to build."""


class RunError(CoordinatorError):
    """The run process failed and no fuzzer executed."""


@dataclass()
class ProcessOutcome:
    command: str
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timestamp: str

    def diagnostic(self) -> DiagnosticContext:
        return DiagnosticContext(
            command=self.command,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
            timestamp=self.timestamp,
        )


async def _pump(chunks: AsyncIterator[str], collected: list[str], sink: OutputSink) -> None:
    async for chunk in chunks:
        collected.append(chunk)
        sink.write(chunk)


async def stream_process(
    runner: ProcessRunner,
    workspace: Path,
    container_ref: str,
    command: str,
    sink: OutputSink,
    shell: str = "/bin/bash",
    options: Optional[RunOptions] = None,
) -> ProcessOutcome:
    """
    Run ``command`` to completion, streaming its output into ``sink``.

    Raises ProcessSpawnError (from the runner) when the process cannot start.
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    handle = await runner.run_command(workspace, container_ref, command, shell, options)

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []
    await asyncio.gather(
        _pump(handle.stdout(), stdout_chunks, sink),
        _pump(handle.stderr(), stderr_chunks, sink),
    )
    exit_code = await handle.wait()
    logger.debug("Command %r exited with %s", command, exit_code)

    return ProcessOutcome(
        command=command,
        exit_code=exit_code,
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
        timestamp=timestamp,
    )


def record_tool_call(
    store: Optional[CampaignStore],
    run_ctx: Optional[RunContext],
    tool: str,
    outcome: ProcessOutcome,
) -> None:
    if store is None or run_ctx is None:
        return
    store.log_tool_call(
        run_ctx,
        tool=tool,
        action=outcome.command,
        detail={
            "exit_code": outcome.exit_code,
            "stdout_bytes": len(outcome.stdout),
            "stderr_bytes": len(outcome.stderr),
            "started_at": outcome.timestamp,
        },
    )
