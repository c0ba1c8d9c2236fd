from .backtrace import BacktraceError, BacktraceGenerator
from .corpus_report import CorpusReportError, CorpusReportGenerator
from .discovery import DiscoveryCache, DiscoveryError, WorkspaceCaches

__all__ = [
    "BacktraceError",
    "BacktraceGenerator",
    "CorpusReportError",
    "CorpusReportGenerator",
    "DiscoveryCache",
    "DiscoveryError",
    "WorkspaceCaches",
]
