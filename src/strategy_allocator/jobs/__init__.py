"""Optimization job execution and event streaming."""

from .executor import JobExecutor, error_event_for, execute_optimization, stream_optimization
from .models import (
    CompletionEvent,
    ErrorEvent,
    Job,
    JobStatus,
    OptimizationEvent,
    OptimizationRequest,
    PhaseProgressEvent,
    is_terminal_event,
)
from .progress import ProgressBroker

__all__ = [
    "CompletionEvent",
    "ErrorEvent",
    "Job",
    "JobExecutor",
    "JobStatus",
    "OptimizationEvent",
    "OptimizationRequest",
    "PhaseProgressEvent",
    "ProgressBroker",
    "error_event_for",
    "execute_optimization",
    "is_terminal_event",
    "stream_optimization",
]
