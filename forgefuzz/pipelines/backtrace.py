"""
Backtrace generation for recorded crashes.

The external tool replays a crash input under the debugger and prints the
stack. This module runs it, formats the result for display and turns source
locations into file links. Nothing here is cached or retried.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config import FuzzCampaignConfig, RuntimeConfig
from ..storage.models import BacktraceResult, DiagnosticContext
from ..tools.coordinator import NullSink, OutputSink, stream_process
from ..tools.crash_discovery import CRASH_PREFIX
from ..tools.fuzzer_names import ensure_valid_name
from ..tools.process_runner import ContainerProcessRunner, ProcessRunner

logger = logging.getLogger(__name__)

RULE = "=" * 80
NO_BACKTRACE = "No backtrace generated (process may not have crashed)"

# "at <path>:<line>" as printed by gdb frames
_SOURCE_LOCATION_RE = re.compile(r"\bat (?P<path>[^\s:]+):(?P<line>\d+)")


class BacktraceError(RuntimeError):
    def __init__(self, message: str, diagnostic: Optional[DiagnosticContext] = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


def extract_crash_hash(crash_id: str) -> str:
    """``crash-<hash>`` -> ``<hash>``. Ids without the prefix pass through."""
    if not crash_id:
        raise ValueError("Crash ID is required")
    if crash_id.startswith(CRASH_PREFIX):
        return crash_id[len(CRASH_PREFIX):]
    return crash_id


def format_crash_time(moment: datetime) -> str:
    """e.g. ``December 19, 2024 at 3:45:23 PM``"""
    hour = moment.hour % 12 or 12
    return (
        f"{moment:%B} {moment.day}, {moment.year} at "
        f"{hour}:{moment:%M}:{moment:%S} {'AM' if moment.hour < 12 else 'PM'}"
    )


def make_clickable(text: str, workspace_root: Path | str) -> str:
    """Rewrite ``at <path>:<line>`` into ``at file://<absolute-path>#<line>``."""
    root = str(workspace_root)

    def _link(match: re.Match[str]) -> str:
        path = match.group("path")
        if not os.path.isabs(path):
            path = os.path.join(root, path)
        return f"at file://{os.path.normpath(path)}#{match.group('line')}"

    return _SOURCE_LOCATION_RE.sub(_link, text)


def format_for_display(
    text: str,
    fuzzer_name: str,
    crash_id: str,
    workspace: Optional[Path | str] = None,
    crash_time: Optional[datetime] = None,
) -> str:
    if not text or not text.strip():
        return f"BACKTRACE NOT AVAILABLE\nCould not generate backtrace for crash {crash_id}\n"

    moment = crash_time or datetime.now()
    body = make_clickable(text, workspace) if workspace is not None else text

    return (
        f"\n{RULE}\n"
        "BACKTRACE ANALYSIS\n"
        f"{RULE}\n\n"
        f"Fuzzer:      {fuzzer_name}\n"
        f"Crash:       {crash_id}\n"
        f"Crash Time:  {format_crash_time(moment)}\n\n"
        f"{RULE}\n"
        "STACK TRACE\n"
        f"{RULE}\n\n"
        f"{body}"
        f"\n\n{RULE}\n"
    )


class BacktraceGenerator:
    """Runs ``generate-backtrace`` for one crash of one fuzzer."""

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        runner: Optional[ProcessRunner] = None,
        config: Optional[FuzzCampaignConfig] = None,
    ) -> None:
        self.runtime = runtime_config
        self.runner = runner or ContainerProcessRunner(runtime_config)
        self.config = config or FuzzCampaignConfig()

    def backtrace_command(self, fuzzer_name: str, crash_hash: str) -> str:
        ensure_valid_name(fuzzer_name)
        ensure_valid_name(crash_hash)
        return f'{self.runtime.tool_command} generate-backtrace "{fuzzer_name}/{crash_hash}"'

    def is_available(self, workspace: Path) -> bool:
        return self.config.output_path(workspace).is_dir()

    async def generate(
        self,
        workspace: Path,
        fuzzer_name: str,
        crash_hash: str,
        container_ref: str,
        sink: Optional[OutputSink] = None,
    ) -> str:
        """
        Produce the raw backtrace text for ``fuzzer_name/crash_hash``.

        Raises:
            InvalidTargetError: Unsafe fuzzer name or hash
            ProcessSpawnError: The tool could not start
            BacktraceError: The tool exited non-zero
        """
        command = self.backtrace_command(fuzzer_name, crash_hash)
        logger.info("Generating backtrace for %s/%s", fuzzer_name, crash_hash)

        outcome = await stream_process(
            self.runner,
            Path(workspace),
            container_ref,
            command,
            sink or NullSink(),
            shell=self.runtime.shell,
        )

        if outcome.exit_code != 0:
            detail = outcome.stderr.strip() or outcome.stdout.strip() or "Unknown error"
            raise BacktraceError(
                f"Backtrace generation failed for {fuzzer_name}/{crash_hash} "
                f"(exit code {outcome.exit_code}): {detail}",
                diagnostic=outcome.diagnostic(),
            )

        return outcome.stdout.strip() or outcome.stderr.strip() or NO_BACKTRACE

    async def generate_report(
        self,
        workspace: Path,
        fuzzer_name: str,
        crash_id: str,
        container_ref: str,
        crash_time: Optional[datetime] = None,
    ) -> BacktraceResult:
        raw = await self.generate(
            workspace, fuzzer_name, extract_crash_hash(crash_id), container_ref
        )
        formatted = format_for_display(
            raw, fuzzer_name, crash_id, workspace=workspace, crash_time=crash_time
        )
        return BacktraceResult(raw_text=raw, formatted_text=formatted)
