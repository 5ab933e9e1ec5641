"""Job data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Mapping, Union
import uuid

from strategy_allocator.common.config_manager import HierarchicalConfig
from strategy_allocator.errors import AllocationInputError
from strategy_allocator.optimizer.hierarchical import BlockInput, HierarchicalResult, PhaseProgress


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class OptimizationRequest:
    """Blocks plus configuration for one hierarchical optimization."""

    blocks: tuple[BlockInput, ...]
    config: HierarchicalConfig = field(default_factory=HierarchicalConfig)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OptimizationRequest:
        blocks = payload.get("blocks")
        if not isinstance(blocks, list):
            raise AllocationInputError("Request must contain a 'blocks' list")
        return cls(
            blocks=tuple(BlockInput.from_dict(b) for b in blocks),
            config=HierarchicalConfig.from_dict(payload.get("config")),
        )


@dataclass(frozen=True)
class PhaseProgressEvent:
    type: ClassVar[str] = "phase-progress"

    phase: int
    phase_progress: float
    message: str
    overall_progress: float

    @classmethod
    def from_progress(cls, progress: PhaseProgress) -> PhaseProgressEvent:
        return cls(
            phase=progress.phase,
            phase_progress=progress.phase_progress,
            message=progress.message,
            overall_progress=progress.overall_progress,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "phase": self.phase,
            "phaseProgress": self.phase_progress,
            "message": self.message,
            "overallProgress": self.overall_progress,
        }


@dataclass(frozen=True)
class CompletionEvent:
    type: ClassVar[str] = "complete"

    result: HierarchicalResult
    duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "result": self.result.to_dict(), "durationMs": self.duration_ms}


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"

    error: str
    details: str | None = None
    code: str = "ALLOCATION_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "error": self.error, "details": self.details, "code": self.code}


OptimizationEvent = Union[PhaseProgressEvent, CompletionEvent, ErrorEvent]


def is_terminal_event(event: OptimizationEvent) -> bool:
    return isinstance(event, (CompletionEvent, ErrorEvent))


@dataclass
class Job:
    """Job definition and runtime state."""

    request: OptimizationRequest
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    progress: PhaseProgressEvent | None = None
    result: HierarchicalResult | None = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at or _utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        return self.status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
