"""
forgefuzz: fuzz-testing campaign orchestration.

Discovers fuzz targets, builds and runs them in the workspace container,
tracks their crashes and produces backtraces and corpus reports.
"""

from .config import ConfigError, FuzzCampaignConfig, RuntimeConfig, normalize
from .orchestration import InteractiveSession, SessionState, WorkflowError, WorkflowOrchestrator
from .pipelines import BacktraceGenerator, DiscoveryCache, WorkspaceCaches

__all__ = [
    "BacktraceGenerator",
    "ConfigError",
    "DiscoveryCache",
    "FuzzCampaignConfig",
    "InteractiveSession",
    "RuntimeConfig",
    "SessionState",
    "WorkflowError",
    "WorkflowOrchestrator",
    "WorkspaceCaches",
    "normalize",
]
