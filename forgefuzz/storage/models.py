from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Sequence

DISPLAY_PREFIX = "codeforge-"
DISPLAY_SUFFIX = "-fuzz"


@dataclass()
class RunContext:
    """Identifiers + paths for a single persisted campaign."""

    project: str
    run_id: str
    root: Path
    logs_dir: Path
    artifacts_dir: Path


# ============================================================================
# Discovery Models
# ============================================================================


@dataclass(frozen=True)
class FuzzTargetDescriptor:
    """One fuzzer discovered under one build preset."""

    preset: str
    fuzzer: str

    @property
    def token(self) -> str:
        return f"{self.preset}:{self.fuzzer}"


@dataclass(frozen=True)
class CrashRecord:
    """A crash input captured for a specific fuzzer."""

    fuzzer_name: str
    file_path: str
    relative_path: str
    discovered_at: datetime
    file_size: int = 0

    @property
    def crash_id(self) -> str:
        return Path(self.file_path).name

    @property
    def crash_hash(self) -> str:
        crash_id = self.crash_id
        return crash_id[len("crash-"):] if crash_id.startswith("crash-") else crash_id


@dataclass(frozen=True)
class FuzzerState:
    """Cached view of one fuzzer. Handed out as a read-only snapshot."""

    name: str
    preset: str
    crashes: tuple[CrashRecord, ...]  # newest first
    output_dir: Path
    last_updated: datetime
    test_count: int = 0

    @property
    def display_name(self) -> str:
        """Name without the build system's ``codeforge-<name>-fuzz`` wrapping."""
        name = self.name
        if name.startswith(DISPLAY_PREFIX):
            name = name[len(DISPLAY_PREFIX):]
        if name.endswith(DISPLAY_SUFFIX):
            name = name[: -len(DISPLAY_SUFFIX)]
        return name

    @property
    def descriptor(self) -> FuzzTargetDescriptor:
        return FuzzTargetDescriptor(preset=self.preset, fuzzer=self.name)


# ============================================================================
# Build / Run Models
# ============================================================================


@dataclass(frozen=True)
class DiagnosticContext:
    """Everything needed to diagnose a process failure without re-running it."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    timestamp: str


@dataclass()
class BuiltTarget:
    name: str
    preset: str
    path: Path


@dataclass()
class BuildFailure:
    preset: str
    target: str
    raw_error: str
    diagnostic_context: DiagnosticContext | None = None


@dataclass()
class BuildResult:
    built_targets: list[BuiltTarget] = field(default_factory=list)
    failures: list[BuildFailure] = field(default_factory=list)
    unparsed_lines: list[str] = field(default_factory=list)

    @property
    def built_count(self) -> int:
        return len(self.built_targets)


@dataclass()
class ExecutionError:
    fuzzer: str
    message: str


@dataclass()
class RunResult:
    executed_fuzzers: list[str] = field(default_factory=list)
    crashes: list[CrashRecord] = field(default_factory=list)
    execution_errors: list[ExecutionError] = field(default_factory=list)
    unparsed_lines: list[str] = field(default_factory=list)

    @property
    def executed_count(self) -> int:
        return len(self.executed_fuzzers)


@dataclass(frozen=True)
class BacktraceResult:
    raw_text: str
    formatted_text: str


# ============================================================================
# Campaign Models
# ============================================================================


class WorkflowStage(str, Enum):
    DISCOVERING = "discovering"
    BUILDING = "building"
    RUNNING = "running"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


@dataclass()
class ReportError:
    """One entry of the campaign error list."""

    kind: str  # "build", "execution", "build_process", "run_process", "workflow"
    subject: str
    message: str


@dataclass()
class CampaignReport:
    """Aggregate outcome of one Discovery -> Build -> Run campaign."""

    workspace: str
    stage: WorkflowStage = WorkflowStage.DISCOVERING
    discovered_targets: Sequence[FuzzTargetDescriptor] = ()
    built_targets: list[BuiltTarget] = field(default_factory=list)
    build_failures: list[BuildFailure] = field(default_factory=list)
    executed_fuzzers: list[str] = field(default_factory=list)
    crashes: list[CrashRecord] = field(default_factory=list)
    errors: list[ReportError] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    summary: str = ""

    @property
    def discovered_count(self) -> int:
        return len(self.discovered_targets)

    @property
    def built_count(self) -> int:
        return len(self.built_targets)

    @property
    def executed_count(self) -> int:
        return len(self.executed_fuzzers)

    @property
    def has_crashes(self) -> bool:
        return bool(self.crashes)
