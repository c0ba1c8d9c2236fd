"""
Fuzzer discovery with a short-lived per-workspace cache.

Flow:
    1. Ask the build system for ``PRESET:FUZZER`` pairs
    2. Scan fuzzer output directories for crash files
    3. Attach crashes and test counts to each fuzzer
    4. Keep the result for ``cache_ttl_seconds``

The cache also lists crashes through ``find-crashes`` and clears a fuzzer's
recorded crashes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from ..config import FuzzCampaignConfig, RuntimeConfig
from ..storage.models import CrashRecord, DiagnosticContext, FuzzerState, FuzzTargetDescriptor
from ..tools.coordinator import NullSink, OutputSink, stream_process
from ..tools.crash_correlator import CrashBucket, CrashCorrelator
from ..tools.crash_discovery import (
    CrashDiscoveryError,
    clear_crash_files,
    discover_crashes,
    output_dir_for,
    read_test_count,
    scan_output_dir,
)
from ..tools.fuzzer_names import ensure_valid_name
from ..tools.output_parsers import CrashListParser, DiscoveryParser, serialize_targets
from ..tools.process_runner import ContainerProcessRunner, ProcessRunner

logger = logging.getLogger(__name__)

NO_TARGETS_MARKER = "No fuzz targets found"


def workspace_key(workspace: Path | str) -> str:
    return os.path.normpath(os.path.abspath(workspace))


class DiscoveryError(RuntimeError):
    """The discovery command failed for a reason other than 'nothing to find'."""

    def __init__(self, message: str, diagnostic: Optional[DiagnosticContext] = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class DiscoveryCache:
    """
    Cached fuzzer discovery for one workspace.

    Entries are frozen FuzzerState snapshots, so callers can hold on to them
    while the cache moves on. ``discover`` and ``refresh`` are serialized
    with an asyncio lock.
    """

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        runner: Optional[ProcessRunner] = None,
        config: Optional[FuzzCampaignConfig] = None,
        correlator: Optional[CrashCorrelator] = None,
        clock: Callable[[], float] = time.monotonic,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self.runtime = runtime_config
        self.runner = runner or ContainerProcessRunner(runtime_config)
        self.config = config or FuzzCampaignConfig()
        self.correlator = correlator or CrashCorrelator()
        self.clock = clock
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else runtime_config.cache_ttl_seconds
        )
        self._states: list[FuzzerState] = []
        self._stamped_at: Optional[float] = None
        self._workspace: Optional[str] = None
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_fresh(self, workspace: Optional[Path] = None) -> bool:
        """
        True while the last non-empty discovery is within the TTL.

        With ``workspace``, the cached entries must also belong to it.
        """
        if self._stamped_at is None or not self._states:
            return False
        if workspace is not None and workspace_key(workspace) != self._workspace:
            return False
        return self.clock() - self._stamped_at < self.ttl_seconds

    def snapshot(self) -> list[FuzzerState]:
        return list(self._states)

    def get(self, name: str) -> Optional[FuzzerState]:
        for state in self._states:
            if state.name == name:
                return state
        return None

    def invalidate(self) -> None:
        self._states = []
        self._stamped_at = None
        self._workspace = None

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(
        self,
        workspace: Path,
        container_ref: str,
        sink: Optional[OutputSink] = None,
    ) -> list[FuzzerState]:
        """
        Return every fuzzer of ``workspace`` with its crashes.

        Served from cache while the last non-empty discovery is younger than
        the TTL.

        Raises:
            DiscoveryError: The discovery command failed
            ProcessSpawnError: The discovery command could not start
        """
        async with self._get_lock():
            if self.is_fresh(workspace):
                logger.debug("Discovery cache hit for %s", workspace)
                return self.snapshot()
            return await self._discover_unlocked(Path(workspace), container_ref, sink)

    async def refresh(
        self,
        workspace: Path,
        container_ref: str,
        name: Optional[str] = None,
    ) -> list[FuzzerState]:
        """
        Refresh cached data.

        With the name of a cached fuzzer only that fuzzer's crashes are
        rescanned, in place. Anything else drops the cache and re-discovers.
        """
        workspace = Path(workspace)
        async with self._get_lock():
            if name is not None and workspace_key(workspace) == self._workspace:
                index = self._index_of(name)
                if index is not None:
                    self._states[index] = self._rescan(workspace, self._states[index])
                    return self.snapshot()
            self.invalidate()
            return await self._discover_unlocked(workspace, container_ref, None)

    async def merge_crashes(self, records: Iterable[CrashRecord]) -> None:
        """Fold freshly reported crashes into cached entries. Keeps the TTL stamp."""
        buckets = self.correlator.bucket(records)
        if not buckets:
            return
        async with self._get_lock():
            now = datetime.now(timezone.utc)
            for index, state in enumerate(self._states):
                bucket = buckets.get(state.name)
                if bucket is None:
                    continue
                merged = self.correlator.merge(state.crashes, bucket.crashes)
                self._states[index] = replace(state, crashes=tuple(merged), last_updated=now)
            unknown = set(buckets) - {s.name for s in self._states}
            for name in sorted(unknown):
                logger.debug("Dropping crashes for uncached fuzzer %s", name)

    # ------------------------------------------------------------------
    # Crash management
    # ------------------------------------------------------------------

    async def list_crashes(
        self,
        workspace: Path,
        container_ref: str,
        targets: Sequence[FuzzTargetDescriptor] = (),
    ) -> list[tuple[str, str]]:
        """
        ``(fuzzer, hash)`` pairs reported by ``find-crashes``.

        Without targets the tool lists crashes of every fuzzer it finds.

        Raises:
            InvalidTargetError: Unsafe preset or fuzzer name
            DiscoveryError: The command exited non-zero
        """
        command = f"{self.runtime.tool_command} find-crashes"
        if targets:
            for target in targets:
                ensure_valid_name(target.preset)
                ensure_valid_name(target.fuzzer)
            command += f' "{serialize_targets(targets)}"'

        outcome = await stream_process(
            self.runner,
            Path(workspace),
            container_ref,
            command,
            NullSink(),
            shell=self.runtime.shell,
        )
        if outcome.exit_code != 0:
            detail = outcome.stderr.strip() or outcome.stdout.strip() or "no output"
            raise DiscoveryError(
                f"Crash listing failed (exit code {outcome.exit_code}): {detail}",
                diagnostic=outcome.diagnostic(),
            )

        parsed = CrashListParser.parse(outcome.stdout)
        for line in parsed.unparsed_lines:
            logger.warning("Unrecognized crash listing output: %s", line)
        return parsed.entries

    async def clear_crashes(self, workspace: Path, container_ref: str, name: str) -> int:
        """
        Delete the recorded crashes of fuzzer ``name`` and refresh its entry.

        Returns the number of crash files removed.

        Raises:
            InvalidTargetError: Unsafe fuzzer name
            CrashDiscoveryError: The output directory could not be read
        """
        ensure_valid_name(name)
        workspace = Path(workspace)
        async with self._get_lock():
            removed = clear_crash_files(self.config.output_path(workspace), name)
        await self.refresh(workspace, container_ref, name=name)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _index_of(self, name: str) -> Optional[int]:
        for index, state in enumerate(self._states):
            if state.name == name:
                return index
        return None

    async def _discover_unlocked(
        self,
        workspace: Path,
        container_ref: str,
        sink: Optional[OutputSink],
    ) -> list[FuzzerState]:
        command = f"{self.runtime.tool_command} find-fuzz-tests -q"
        outcome = await stream_process(
            self.runner,
            workspace,
            container_ref,
            command,
            sink or NullSink(),
            shell=self.runtime.shell,
        )

        if outcome.exit_code != 0:
            if NO_TARGETS_MARKER in outcome.stdout or NO_TARGETS_MARKER in outcome.stderr:
                logger.info("No fuzz targets found in %s", workspace)
                self._states = []
                self._stamped_at = self.clock()
                self._workspace = workspace_key(workspace)
                return []
            detail = outcome.stderr.strip() or outcome.stdout.strip() or "no output"
            raise DiscoveryError(
                f"Fuzzer discovery failed (exit code {outcome.exit_code}): {detail}",
                diagnostic=outcome.diagnostic(),
            )

        parsed = DiscoveryParser.parse(outcome.stdout)
        for line in parsed.unparsed_lines:
            logger.warning("Unrecognized discovery output: %s", line)

        fuzzing_dir = self.config.output_path(workspace)
        try:
            crashes = discover_crashes(fuzzing_dir)
        except CrashDiscoveryError as e:
            logger.warning("Crash discovery failed, continuing without crashes: %s", e)
            crashes = []
        buckets = self.correlator.bucket(crashes)

        now = datetime.now(timezone.utc)
        self._states = [
            self._enrich(fuzzing_dir, descriptor, buckets.get(descriptor.fuzzer), now)
            for descriptor in parsed.targets
        ]
        self._stamped_at = self.clock()
        self._workspace = workspace_key(workspace)
        logger.info("Discovered %d fuzzer(s) in %s", len(self._states), workspace)
        return self.snapshot()

    def _enrich(
        self,
        fuzzing_dir: Path,
        descriptor: FuzzTargetDescriptor,
        bucket: Optional[CrashBucket],
        now: datetime,
    ) -> FuzzerState:
        output_dir = output_dir_for(fuzzing_dir, descriptor.fuzzer)
        try:
            return FuzzerState(
                name=descriptor.fuzzer,
                preset=descriptor.preset,
                crashes=tuple(bucket.crashes) if bucket else (),
                output_dir=output_dir,
                last_updated=now,
                test_count=read_test_count(fuzzing_dir, descriptor.fuzzer),
            )
        except (OSError, ValueError) as e:
            logger.warning("Could not load details for %s: %s", descriptor.fuzzer, e)
            return FuzzerState(
                name=descriptor.fuzzer,
                preset=descriptor.preset,
                crashes=(),
                output_dir=output_dir,
                last_updated=now,
            )

    def _rescan(self, workspace: Path, state: FuzzerState) -> FuzzerState:
        fuzzing_dir = self.config.output_path(workspace)
        try:
            crashes = self.correlator.crashes_for(
                state.name, scan_output_dir(fuzzing_dir, state.name)
            )
        except CrashDiscoveryError as e:
            logger.warning("Crash rescan failed for %s: %s", state.name, e)
            return state
        try:
            test_count = read_test_count(fuzzing_dir, state.name)
        except (OSError, ValueError):
            test_count = state.test_count
        return replace(
            state,
            crashes=tuple(crashes),
            last_updated=datetime.now(timezone.utc),
            test_count=test_count,
        )


class WorkspaceCaches:
    """One DiscoveryCache per workspace path, shared by every session on it."""

    def __init__(self, factory: Callable[[Path], DiscoveryCache]) -> None:
        self.factory = factory
        self._caches: dict[str, DiscoveryCache] = {}

    def for_workspace(self, workspace: Path) -> DiscoveryCache:
        key = workspace_key(workspace)
        cache = self._caches.get(key)
        if cache is None:
            cache = self.factory(Path(key))
            self._caches[key] = cache
        return cache

    def invalidate_all(self) -> None:
        for cache in self._caches.values():
            cache.invalidate()
