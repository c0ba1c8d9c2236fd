from .build_coordinator import BuildCoordinator
from .coordinator import (
    BufferSink,
    BuildError,
    CoordinatorError,
    NullSink,
    OutputSink,
    RunError,
)
from .crash_correlator import CrashBucket, CrashCorrelator
from .crash_discovery import CrashDiscoveryError, discover_crashes
from .fuzzer_names import InvalidTargetError
from .process_runner import (
    ContainerProcessRunner,
    ProcessHandle,
    ProcessRunner,
    ProcessSpawnError,
    RunOptions,
)
from .run_coordinator import RunCoordinator

__all__ = [
    "BufferSink",
    "BuildCoordinator",
    "BuildError",
    "ContainerProcessRunner",
    "CoordinatorError",
    "CrashBucket",
    "CrashCorrelator",
    "CrashDiscoveryError",
    "InvalidTargetError",
    "NullSink",
    "OutputSink",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpawnError",
    "RunCoordinator",
    "RunError",
    "RunOptions",
    "discover_crashes",
]
