from .main import RecoveryAction, WorkflowError, WorkflowOrchestrator, generate_summary
from .session import InteractiveSession, SessionError, SessionState

__all__ = [
    "InteractiveSession",
    "RecoveryAction",
    "SessionError",
    "SessionState",
    "WorkflowError",
    "WorkflowOrchestrator",
    "generate_summary",
]
