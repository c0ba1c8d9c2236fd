from .local_store import CampaignStore
from .models import (
    BacktraceResult,
    BuildFailure,
    BuildResult,
    BuiltTarget,
    CampaignReport,
    CrashRecord,
    DiagnosticContext,
    ExecutionError,
    FuzzerState,
    FuzzTargetDescriptor,
    ReportError,
    RunContext,
    RunResult,
    WorkflowStage,
)

__all__ = [
    "BacktraceResult",
    "BuildFailure",
    "BuildResult",
    "BuiltTarget",
    "CampaignReport",
    "CampaignStore",
    "CrashRecord",
    "DiagnosticContext",
    "ExecutionError",
    "FuzzerState",
    "FuzzTargetDescriptor",
    "ReportError",
    "RunContext",
    "RunResult",
    "WorkflowStage",
]
