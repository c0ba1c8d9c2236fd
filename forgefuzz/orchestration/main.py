from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Union

from ..config import FuzzCampaignConfig, RuntimeConfig
from ..pipelines.discovery import DiscoveryCache, DiscoveryError, WorkspaceCaches
from ..storage.local_store import CampaignStore
from ..storage.models import (
    BuildResult,
    CampaignReport,
    FuzzTargetDescriptor,
    ReportError,
    RunContext,
    RunResult,
    WorkflowStage,
)
from ..tools.build_coordinator import BuildCoordinator
from ..tools.coordinator import BuildError, NullSink, OutputSink, RunError
from ..tools.fuzzer_names import InvalidTargetError
from ..tools.process_runner import ProcessRunner, container_ref_for
from ..tools.run_coordinator import RunCoordinator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class WorkflowError(RuntimeError):
    """The campaign could not continue past ``stage``."""

    def __init__(
        self,
        message: str,
        stage: WorkflowStage,
        report: Optional[CampaignReport] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.report = report


class RecoveryAction(str, Enum):
    RETRY = "retry"
    CANCEL = "cancel"


RecoveryPrompt = Callable[
    [Exception, int], Union[RecoveryAction, Awaitable[RecoveryAction]]
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _no_progress(percent: int, message: str) -> None:
    pass


def generate_summary(report: CampaignReport) -> str:
    """Human-readable campaign summary, written to the session at the end."""
    lines = [
        "=== Fuzzing Results Summary ===",
        f"Targets discovered: {report.discovered_count}",
        f"Targets built: {report.built_count}/{report.discovered_count}",
        f"Fuzzers executed: {report.executed_count}",
        f"Crashes found: {len(report.crashes)}",
        f"Errors encountered: {len(report.errors)}",
    ]

    if report.crashes:
        lines.extend(["", "Crashes found:"])
        for crash in report.crashes:
            lines.append(f"  - {crash.fuzzer_name}: {crash.file_path}")

    if report.errors:
        lines.extend(["", "Errors:"])
        for error in report.errors:
            lines.append(f"  - {error.kind} ({error.subject}): {error.message}")

    return "\n".join(lines)


class WorkflowOrchestrator:
    """
    High-level coordinator for one fuzzing campaign.

    Responsibilities:
        * Discover fuzz targets through the shared DiscoveryCache.
        * Build every discovered target in one build invocation.
        * Run every discovered target in one run invocation.
        * Fold new crashes back into the cache.
        * Report a summary and, with a store, persist the campaign.
    """

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        config: Optional[FuzzCampaignConfig] = None,
        cache: Optional[DiscoveryCache] = None,
        builder: Optional[BuildCoordinator] = None,
        run_coordinator: Optional[RunCoordinator] = None,
        runner: Optional[ProcessRunner] = None,
        store: Optional[CampaignStore] = None,
        caches: Optional[WorkspaceCaches] = None,
    ) -> None:
        self.runtime = runtime_config
        self.config = config or FuzzCampaignConfig()
        self.store = store
        self.caches = caches
        self.cache = cache or DiscoveryCache(
            runtime_config, runner=runner, config=self.config
        )
        self.builder = builder or BuildCoordinator(
            runtime_config, runner=runner, store=store
        )
        self.run_coordinator = run_coordinator or RunCoordinator(
            runtime_config, runner=runner, store=store
        )

    def cache_for(self, workspace: Path) -> DiscoveryCache:
        """The shared cache of ``workspace`` when a registry is set, else our own."""
        if self.caches is not None:
            return self.caches.for_workspace(workspace)
        return self.cache

    def _log(self, run_ctx: Optional[RunContext], message: str) -> None:
        logger.info(message)
        if self.store and run_ctx:
            self.store.log_event(run_ctx, message)

    async def execute(
        self,
        workspace: Optional[Path] = None,
        container_ref: Optional[str] = None,
        sink: Optional[OutputSink] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> CampaignReport:
        """
        Run Discovery -> Build -> Run -> Report once.

        Raises:
            WorkflowError: Discovery failed or found no targets
            ProcessSpawnError: A tool could not be started at all
        """
        workspace = Path(workspace or self.runtime.workspace_root)
        container_ref = (
            container_ref or self.runtime.container_ref or container_ref_for(workspace)
        )
        sink = sink or NullSink()
        progress = progress or _no_progress
        cache = self.cache_for(workspace)

        report = CampaignReport(workspace=str(workspace), started_at=_now())
        run_ctx = self.store.allocate_run_context(workspace.name) if self.store else None
        self._log(run_ctx, f"Starting fuzzing campaign for {workspace}")

        # ====================================================================
        # Step 1: Discovery
        # ====================================================================
        report.stage = WorkflowStage.DISCOVERING
        progress(5, "Discovering fuzz targets...")
        try:
            states = await cache.discover(workspace, container_ref)
        except DiscoveryError as e:
            report.stage = WorkflowStage.FAILED
            self._log(run_ctx, f"Discovery failed: {e}")
            raise WorkflowError(str(e), WorkflowStage.DISCOVERING, report) from e

        if not states:
            report.stage = WorkflowStage.FAILED
            self._log(run_ctx, "No fuzz targets found")
            raise WorkflowError(
                f"No fuzz targets found in {workspace}",
                WorkflowStage.DISCOVERING,
                report,
            )

        targets = [state.descriptor for state in states]
        report.discovered_targets = targets
        progress(10, f"Found {len(targets)} fuzz target(s)")
        sink.write(
            f"Found {len(targets)} fuzz target(s): "
            f"{', '.join(t.token for t in targets)}\n"
        )
        self.config.output_path(workspace).mkdir(parents=True, exist_ok=True)

        # ====================================================================
        # Step 2: Build
        # ====================================================================
        report.stage = WorkflowStage.BUILDING
        progress(30, f"Building {len(targets)} fuzz target(s)...")
        build = await self._build(workspace, container_ref, targets, sink, run_ctx, report)
        report.built_targets = build.built_targets
        report.build_failures = build.failures
        progress(70, f"Built {build.built_count}/{len(targets)} fuzz target(s)")

        # ====================================================================
        # Step 3: Run
        # ====================================================================
        report.stage = WorkflowStage.RUNNING
        progress(70, f"Running {len(targets)} fuzzer(s)...")
        run = await self._run(workspace, container_ref, targets, sink, run_ctx, report)
        report.executed_fuzzers = run.executed_fuzzers
        report.crashes = run.crashes
        if run.crashes:
            await cache.merge_crashes(run.crashes)
        progress(95, f"Executed {run.executed_count} fuzzer(s)")

        # ====================================================================
        # Step 4: Report
        # ====================================================================
        report.stage = WorkflowStage.REPORTING
        report.summary = generate_summary(report)
        sink.write(f"\n{report.summary}\n")
        report.stage = WorkflowStage.DONE
        report.finished_at = _now()

        if self.store and run_ctx:
            out_file = self.store.persist_report(run_ctx, report)
            self._log(run_ctx, f"Campaign report written to {out_file}")

        self._log(
            run_ctx,
            f"Campaign finished: {report.built_count} built, "
            f"{report.executed_count} executed, {len(report.crashes)} crash(es)",
        )
        progress(100, "Fuzzing complete")
        return report

    async def _build(
        self,
        workspace: Path,
        container_ref: str,
        targets: Sequence[FuzzTargetDescriptor],
        sink: OutputSink,
        run_ctx: Optional[RunContext],
        report: CampaignReport,
    ) -> BuildResult:
        try:
            build = await self.builder.build(
                workspace, container_ref, targets, self.config, sink, run_ctx=run_ctx
            )
        except BuildError as e:
            build = e.result if isinstance(e.result, BuildResult) else BuildResult()
            if not build.failures:
                report.errors.append(ReportError("build_process", "build-fuzz-tests", str(e)))
            self._log(run_ctx, f"Build failed: {e}")
        except InvalidTargetError as e:
            report.errors.append(ReportError("build_process", "build-fuzz-tests", str(e)))
            self._log(run_ctx, f"Build rejected: {e}")
            return BuildResult()

        for failure in build.failures:
            report.errors.append(ReportError("build", failure.target, failure.raw_error))
        return build

    async def _run(
        self,
        workspace: Path,
        container_ref: str,
        targets: Sequence[FuzzTargetDescriptor],
        sink: OutputSink,
        run_ctx: Optional[RunContext],
        report: CampaignReport,
    ) -> RunResult:
        try:
            run = await self.run_coordinator.run(
                workspace, container_ref, targets, self.config, sink, run_ctx=run_ctx
            )
        except RunError as e:
            run = e.result if isinstance(e.result, RunResult) else RunResult()
            if not run.execution_errors:
                report.errors.append(ReportError("run_process", "run-fuzz-tests", str(e)))
            self._log(run_ctx, f"Run failed: {e}")
        except InvalidTargetError as e:
            report.errors.append(ReportError("run_process", "run-fuzz-tests", str(e)))
            self._log(run_ctx, f"Run rejected: {e}")
            return RunResult()

        for error in run.execution_errors:
            report.errors.append(ReportError("execution", error.fuzzer, error.message))
        return run

    async def execute_with_retry(
        self,
        workspace: Optional[Path] = None,
        container_ref: Optional[str] = None,
        sink: Optional[OutputSink] = None,
        progress: Optional[ProgressCallback] = None,
        prompt: Optional[RecoveryPrompt] = None,
        max_attempts: Optional[int] = None,
    ) -> CampaignReport:
        """
        ``execute`` with user-driven recovery.

        After a failed attempt ``prompt(error, attempt)`` decides between
        RETRY and CANCEL. Every retry starts again from discovery with an
        empty cache. The last error is re-raised once attempts run out or the
        prompt cancels.
        """
        limit = max_attempts if max_attempts is not None else self.runtime.max_retry_attempts
        limit = max(limit, 1)
        sink = sink or NullSink()
        attempt = 0

        while True:
            attempt += 1
            try:
                return await self.execute(workspace, container_ref, sink, progress)
            except Exception as e:
                logger.warning("Fuzzing attempt %d/%d failed: %s", attempt, limit, e)
                sink.write(f"Fuzzing workflow failed: {e}\n")
                if prompt is None or attempt >= limit:
                    raise
                action = prompt(e, attempt)
                if inspect.isawaitable(action):
                    action = await action
                if action != RecoveryAction.RETRY:
                    raise
                self.cache_for(Path(workspace or self.runtime.workspace_root)).invalidate()
