"""
Corpus reports for one fuzzer.

The external tool prints statistics and hexdumps of every corpus input.
Like backtraces, reports are produced on request and never cached.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..config import FuzzCampaignConfig, RuntimeConfig
from ..storage.models import DiagnosticContext
from ..tools.coordinator import NullSink, OutputSink, stream_process
from ..tools.fuzzer_names import ensure_valid_name
from ..tools.process_runner import ContainerProcessRunner, ProcessRunner

logger = logging.getLogger(__name__)

NO_CORPUS_REPORT = "No corpus report generated (corpus directory may be empty)"


class CorpusReportError(RuntimeError):
    def __init__(self, message: str, diagnostic: Optional[DiagnosticContext] = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class CorpusReportGenerator:
    """Runs ``generate-corpus-report`` for one fuzzer."""

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        runner: Optional[ProcessRunner] = None,
        config: Optional[FuzzCampaignConfig] = None,
    ) -> None:
        self.runtime = runtime_config
        self.runner = runner or ContainerProcessRunner(runtime_config)
        self.config = config or FuzzCampaignConfig()

    def report_command(self, fuzzer_name: str) -> str:
        ensure_valid_name(fuzzer_name)
        return f'{self.runtime.tool_command} generate-corpus-report "{fuzzer_name}"'

    def is_available(self, workspace: Path) -> bool:
        return self.config.output_path(workspace).is_dir()

    async def generate(
        self,
        workspace: Path,
        fuzzer_name: str,
        container_ref: str,
        sink: Optional[OutputSink] = None,
    ) -> str:
        """
        Produce the corpus report text for ``fuzzer_name``.

        Raises:
            InvalidTargetError: Unsafe fuzzer name
            ProcessSpawnError: The tool could not start
            CorpusReportError: The tool exited non-zero
        """
        command = self.report_command(fuzzer_name)
        logger.info("Generating corpus report for %s", fuzzer_name)

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
            raise CorpusReportError(
                f"Corpus report generation failed for {fuzzer_name} "
                f"(exit code {outcome.exit_code}): {detail}",
                diagnostic=outcome.diagnostic(),
            )

        return outcome.stdout.strip() or outcome.stderr.strip() or NO_CORPUS_REPORT
