# schemas/metrics.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — METRIC + RESULT SCHEMAS
# ============================================================================
# Purpose: Outbound metric records and the result types the pipeline hands
# back to its callers (delivery, processing, acknowledgement, batch sync).
# ============================================================================

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

DimensionValue = Union[bool, int, float, str]


# ============================================================================
# SECTION 1: METRIC RECORD
# ============================================================================

class MetricRecord(BaseModel):
    """One Triple Whale custom metric data point. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    metric_name: str = Field(min_length=1)
    value: float
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    dimensions: Dict[str, DimensionValue] = Field(default_factory=dict)

    @field_validator("dimensions", mode="before")
    @classmethod
    def drop_missing_dimensions(cls, v: Any) -> Dict[str, Any]:
        if not v:
            return {}
        return {k: val for k, val in dict(v).items() if val is not None}

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump()


# ============================================================================
# SECTION 2: RESILIENCE + AUTH STATE
# ============================================================================

class CircuitBreakerState(BaseModel):
    """Read-only view of a breaker, served by /metrics."""
    name: str
    state: str
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[datetime] = None


class AuthToken(BaseModel):
    """Bearer token owned by one API client. Replaced, never mutated."""
    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) < self.expires_at


# ============================================================================
# SECTION 3: PIPELINE RESULTS
# ============================================================================

class DeliveryResult(BaseModel):
    success: bool
    metrics_sent: int = 0
    chunks_sent: int = 0
    chunks_total: int = 0


class EventStage(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    CLASSIFIED = "classified"
    TRANSFORMED = "transformed"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    FAILED = "failed"


class ProcessingOutcome(BaseModel):
    """Internal result of one event. Logged and counted, never returned raw."""
    stage: EventStage
    event_type: Optional[str] = None
    metrics_generated: int = 0
    processing_time_ms: int = 0
    error: Optional[str] = None
    rejection_reason: Optional[str] = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.stage in (EventStage.DELIVERED, EventStage.REJECTED, EventStage.FAILED)


class AckResult(BaseModel):
    """What the webhook transport sends back to Shiprocket."""
    status_code: int
    success: bool
    metrics_generated: int = 0
    processing_time_ms: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    details: List[Dict[str, Any]] = Field(default_factory=list)
    outcome: ProcessingOutcome

    def body(self) -> Dict[str, Any]:
        if self.status_code == 401:
            return {"error": self.error or "Invalid signature"}

        if self.status_code == 400:
            return {
                "error": self.error or "Invalid webhook payload",
                "details": self.details,
            }

        body: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "metricsGenerated": self.metrics_generated,
            "processingTime": self.processing_time_ms,
        }
        if self.error:
            body["error"] = self.error
        return body


class SyncReport(BaseModel):
    """Result of a manual or scheduled batch sync."""
    sync_type: str
    start_date: str
    end_date: str
    orders: int = 0
    shipments: int = 0
    metrics_generated: int = 0
    metrics_synced: int = 0


__all__ = [
    "MetricRecord",
    "CircuitBreakerState",
    "AuthToken",
    "DeliveryResult",
    "EventStage",
    "ProcessingOutcome",
    "AckResult",
    "SyncReport",
]
