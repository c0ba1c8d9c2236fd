from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from ..config import FuzzCampaignConfig, RuntimeConfig
from ..storage.local_store import CampaignStore
from ..storage.models import BuildResult, FuzzTargetDescriptor, RunContext
from .coordinator import BuildError, NullSink, OutputSink, record_tool_call, stream_process
from .fuzzer_names import ensure_valid_name
from .output_parsers import BuildOutputParser, serialize_targets
from .process_runner import ContainerProcessRunner, ProcessRunner

logger = logging.getLogger(__name__)


class BuildCoordinator:
    """
    Builds a set of fuzz targets with a single ``build-fuzz-tests`` invocation.

    Responsibilities:
        - Validate target names before they reach a shell
        - Stream build output to the caller's sink
        - Parse the marker output into built targets and failures
    """

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        runner: Optional[ProcessRunner] = None,
        store: Optional[CampaignStore] = None,
    ) -> None:
        self.runtime = runtime_config
        self.runner = runner or ContainerProcessRunner(runtime_config)
        self.store = store

    def build_command(self, targets: Sequence[FuzzTargetDescriptor]) -> str:
        for target in targets:
            ensure_valid_name(target.preset)
            ensure_valid_name(target.fuzzer)
        return f'{self.runtime.tool_command} build-fuzz-tests "{serialize_targets(targets)}"'

    async def build(
        self,
        workspace: Path,
        container_ref: str,
        targets: Sequence[FuzzTargetDescriptor],
        config: Optional[FuzzCampaignConfig] = None,
        sink: Optional[OutputSink] = None,
        run_ctx: Optional[RunContext] = None,
    ) -> BuildResult:
        """
        Build ``targets`` and return what was built and what failed.

        Args:
            workspace: Project root mounted into the container
            container_ref: Image to run the build in
            targets: Preset/fuzzer pairs to build
            config: Campaign config, used for the fuzzing output directory
            sink: Receives raw build output as it streams

        Raises:
            InvalidTargetError: A preset or fuzzer name is unsafe
            ProcessSpawnError: The build process could not start
            BuildError: Nothing was built and the build reported failures
        """
        if not targets:
            return BuildResult()

        config = config or FuzzCampaignConfig()
        sink = sink or NullSink()
        command = self.build_command(targets)
        logger.info("Building %d fuzz target(s): %s", len(targets), serialize_targets(targets))

        outcome = await stream_process(
            self.runner,
            workspace,
            container_ref,
            command,
            sink,
            shell=self.runtime.shell,
        )
        diagnostic = outcome.diagnostic()
        result = BuildOutputParser.parse(
            outcome.stdout,
            outcome.stderr,
            outcome.exit_code,
            targets,
            config.output_path(workspace),
            diagnostic=diagnostic,
        )
        record_tool_call(self.store, run_ctx, "build_coordinator", outcome)
        for line in result.unparsed_lines:
            logger.warning("Unrecognized build output: %s", line)

        if result.built_count == 0 and (result.failures or outcome.exit_code != 0):
            if result.failures:
                message = "; ".join(f"{f.target}: {f.raw_error}" for f in result.failures)
            else:
                message = f"Build process exited with code {outcome.exit_code}"
            raise BuildError(f"Build failed: {message}", result=result, diagnostic=diagnostic)

        logger.info(
            "Build finished: %d built, %d failed",
            result.built_count,
            len(result.failures),
        )
        return result
