"""
Data models for the Cache Flush service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class OperationType(str, Enum):
    """How a flush operation was triggered."""
    MANUAL = "manual"
    AUTO = "auto"
    SCHEDULED = "scheduled"


class OperationStatus(str, Enum):
    """Lifecycle states of a flush operation."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class LayerStatus(str, Enum):
    """Lifecycle states of a single layer flush row."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class ResultStatus(str, Enum):
    """Per-layer outcome reported to the caller."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_LAYER_STATUSES = {LayerStatus.COMPLETED, LayerStatus.ERROR, LayerStatus.SKIPPED}

_RESULT_FOR_LAYER_STATUS = {
    LayerStatus.COMPLETED: ResultStatus.SUCCESS,
    LayerStatus.ERROR: ResultStatus.ERROR,
    LayerStatus.SKIPPED: ResultStatus.SKIPPED,
}


@dataclass(frozen=True)
class CacheLayerConfig:
    """A flushable cache layer as configured by administrators."""
    layer_id: str
    flush_priority: int = 100
    is_active: bool = True
    config_metadata: Dict[str, Any] = field(default_factory=dict)
    auto_flush_enabled: bool = False
    auto_flush_interval_hours: int = 24
    max_size_mb: Optional[int] = None
    retention_hours: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layer_id": self.layer_id,
            "flush_priority": self.flush_priority,
            "is_active": self.is_active,
            "config_metadata": dict(self.config_metadata),
            "auto_flush_enabled": self.auto_flush_enabled,
            "auto_flush_interval_hours": self.auto_flush_interval_hours,
            "max_size_mb": self.max_size_mb,
            "retention_hours": self.retention_hours,
        }


@dataclass
class LayerResult:
    """Outcome of one attempted layer within an operation."""
    layer: str
    status: ResultStatus
    items_cleared: int = 0
    size_cleared_mb: float = 0.0
    duration_ms: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "layer": self.layer,
            "status": self.status.value,
            "items_cleared": self.items_cleared,
            "size_cleared_mb": self.size_cleared_mb,
            "duration_ms": self.duration_ms,
        }
        if self.error_message is not None:
            payload["error_message"] = self.error_message
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerResult":
        return cls(
            layer=data["layer"],
            status=ResultStatus(data["status"]),
            items_cleared=int(data.get("items_cleared", 0)),
            size_cleared_mb=float(data.get("size_cleared_mb", 0.0)),
            duration_ms=int(data.get("duration_ms", 0)),
            error_message=data.get("error_message"),
        )


@dataclass
class FlushOperation:
    """One invocation of the orchestrator."""
    operation_id: str
    operation_type: OperationType
    requested_layers: List[str]
    initiated_by: Optional[str]
    status: OperationStatus = OperationStatus.RUNNING
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    successes: List[LayerResult] = field(default_factory=list)
    errors: List[LayerResult] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def success_details(self) -> Dict[str, Any]:
        return {"results": [r.to_dict() for r in self.successes]}

    @property
    def error_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"results": [r.to_dict() for r in self.errors]}
        if self.metadata.get("failure_reason"):
            details["reason"] = self.metadata["failure_reason"]
        return details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "requested_layers": list(self.requested_layers),
            "initiated_by": self.initiated_by,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "success_details": self.success_details,
            "error_details": self.error_details,
        }


@dataclass
class LayerFlushStatus:
    """Status-tracker row for one (operation_id, layer_id) pair."""
    operation_id: str
    layer_id: str
    status: LayerStatus = LayerStatus.RUNNING
    items_cleared: int = 0
    size_cleared_mb: float = 0.0
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LAYER_STATUSES

    def to_result(self) -> LayerResult:
        return LayerResult(
            layer=self.layer_id,
            status=_RESULT_FOR_LAYER_STATUS[self.status],
            items_cleared=self.items_cleared,
            size_cleared_mb=self.size_cleared_mb,
            duration_ms=self.duration_ms or 0,
            error_message=self.error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "layer_id": self.layer_id,
            "status": self.status.value,
            "items_cleared": self.items_cleared,
            "size_cleared_mb": self.size_cleared_mb,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class FlushResult:
    """What the coordinator hands back to the caller."""
    operation_id: str
    status: OperationStatus
    results: List[LayerResult]

    @property
    def cleared_layers(self) -> List[str]:
        return [r.layer for r in self.results if r.status == ResultStatus.SUCCESS]

    @property
    def total_items_cleared(self) -> int:
        return sum(r.items_cleared for r in self.results if r.status == ResultStatus.SUCCESS)

    @property
    def total_size_cleared_mb(self) -> float:
        total = sum(r.size_cleared_mb for r in self.results if r.status == ResultStatus.SUCCESS)
        return round(total, 3)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "total_items_cleared": self.total_items_cleared,
            "total_size_cleared_mb": self.total_size_cleared_mb,
        }


# --- API models ---


class FlushRequest(BaseModel):
    """Request body for a cache flush."""
    cache_layers: List[str] = Field(..., min_length=1, description="Layer ids to flush")
    operation_type: OperationType = Field(default=OperationType.MANUAL, description="Trigger type")
    force: bool = Field(default=False, description="Bypass executor cooldowns")


class LayerResultModel(BaseModel):
    """Per-layer result entry."""
    layer: str
    status: ResultStatus
    items_cleared: int = Field(..., ge=0)
    size_cleared_mb: float = Field(..., ge=0)
    duration_ms: int = Field(..., ge=0)
    error_message: Optional[str] = None


class FlushResponse(BaseModel):
    """Response body for a cache flush."""
    operation_id: str
    status: OperationStatus
    results: List[LayerResultModel]
    total_items_cleared: int
    total_size_cleared_mb: float
