from loguru import logger

from .cancellation import CancellationToken
from .errors import ConfigurationError, DispatchError, ErrorKind, JobStateError
from .execution.types import BackendDescriptor, BackendId
from .jobs import Job, JobLifecycleManager, JobState
from .orchestrator import BackendHealth, Orchestrator, RoutePlan, build_orchestrator
from .request import Constraints, ExecutionRequest, Language, ResourceHints
from .result import ErrorInfo, ExecutionMetadata, ExecutionResult
from .selection import fallback_backend, select_backend
from .settings import RouterSettings, configure_logging

logger.disable("safe_code_router")

__all__ = [
    "BackendDescriptor",
    "BackendHealth",
    "BackendId",
    "CancellationToken",
    "ConfigurationError",
    "Constraints",
    "DispatchError",
    "ErrorInfo",
    "ErrorKind",
    "ExecutionMetadata",
    "ExecutionRequest",
    "ExecutionResult",
    "Job",
    "JobLifecycleManager",
    "JobState",
    "JobStateError",
    "Language",
    "Orchestrator",
    "ResourceHints",
    "RoutePlan",
    "RouterSettings",
    "build_orchestrator",
    "configure_logging",
    "fallback_backend",
    "select_backend",
]
