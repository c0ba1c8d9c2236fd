from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional, Sequence

from ..config import FuzzCampaignConfig, RuntimeConfig, engine_arguments
from ..storage.local_store import CampaignStore
from ..storage.models import FuzzTargetDescriptor, RunContext, RunResult
from .coordinator import NullSink, OutputSink, RunError, record_tool_call, stream_process
from .fuzzer_names import ensure_valid_name
from .output_parsers import RunOutputParser, serialize_targets
from .process_runner import ContainerProcessRunner, ProcessRunner, RunOptions, render_env_args

logger = logging.getLogger(__name__)

ENGINE_OPTIONS_VAR = "LIBFUZZER_OPTIONS"


class RunCoordinator:
    """
    Executes built fuzzers with a single ``run-fuzz-tests`` invocation.

    Engine options derived from the campaign config travel to the run script
    through the ``LIBFUZZER_OPTIONS`` container environment variable.
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

    def run_command(self, targets: Sequence[FuzzTargetDescriptor]) -> str:
        for target in targets:
            ensure_valid_name(target.preset)
            ensure_valid_name(target.fuzzer)
        return f'{self.runtime.tool_command} run-fuzz-tests "{serialize_targets(targets)}"'

    def run_options(self, config: FuzzCampaignConfig) -> RunOptions:
        options_value = " ".join(shlex.quote(arg) for arg in engine_arguments(config))
        return RunOptions(
            additional_args=tuple(render_env_args({ENGINE_OPTIONS_VAR: options_value}))
        )

    async def run(
        self,
        workspace: Path,
        container_ref: str,
        targets: Sequence[FuzzTargetDescriptor],
        config: Optional[FuzzCampaignConfig] = None,
        sink: Optional[OutputSink] = None,
        run_ctx: Optional[RunContext] = None,
    ) -> RunResult:
        """
        Run ``targets`` and collect executed fuzzers, crashes and errors.

        Raises InvalidTargetError, ProcessSpawnError, or RunError when the
        process failed without executing a single fuzzer.
        """
        if not targets:
            return RunResult()

        config = config or FuzzCampaignConfig()
        sink = sink or NullSink()
        command = self.run_command(targets)
        logger.info("Running %d fuzzer(s): %s", len(targets), serialize_targets(targets))

        outcome = await stream_process(
            self.runner,
            workspace,
            container_ref,
            command,
            sink,
            shell=self.runtime.shell,
            options=self.run_options(config),
        )
        result = RunOutputParser.parse(
            outcome.stdout,
            outcome.stderr,
            outcome.exit_code,
            requested=targets,
            fuzzing_dir=config.output_path(workspace),
        )
        record_tool_call(self.store, run_ctx, "run_coordinator", outcome)
        for line in result.unparsed_lines:
            logger.warning("Unrecognized run output: %s", line)

        if result.executed_count == 0 and outcome.exit_code != 0:
            message = "; ".join(e.message for e in result.execution_errors)
            raise RunError(
                f"Fuzzer run failed: {message}",
                result=result,
                diagnostic=outcome.diagnostic(),
            )

        logger.info(
            "Run finished: %d executed, %d crash(es), %d error(s)",
            result.executed_count,
            len(result.crashes),
            len(result.execution_errors),
        )
        return result
