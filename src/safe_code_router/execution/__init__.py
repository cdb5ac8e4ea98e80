from .capabilities import DEFAULT_DESCRIPTORS, parse_backend_name
from .engine import AsyncBackendAdapter, BackendAdapter, SyncBackendAdapter
from .types import (
    BackendDescriptor,
    BackendId,
    IsolationLevel,
    JobStatus,
    JobStatusReport,
    LatencyClass,
    RawOutcome,
)

__all__ = [
    "AsyncBackendAdapter",
    "BackendAdapter",
    "BackendDescriptor",
    "BackendId",
    "DEFAULT_DESCRIPTORS",
    "IsolationLevel",
    "JobStatus",
    "JobStatusReport",
    "LatencyClass",
    "RawOutcome",
    "SyncBackendAdapter",
    "parse_backend_name",
]
