from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AlertSeverity(str, Enum):
    """Severity levels for alerts."""

    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"
    critical = "CRITICAL"


class AlertStatus(str, Enum):
    """Lifecycle status of an alert."""

    open = "OPEN"
    resolved = "RESOLVED"
    ignored = "IGNORED"


class AlertThresholds(BaseModel):
    """Ceilings the alert engine compares each LogRecord against."""

    cpu_usage_percent: float = Field(80.0, ge=0, description="Alert when total CPU percent is above this.")
    memory_usage_percent: float = Field(85.0, ge=0, description="Alert when memory used percent is above this.")
    process_count: int = Field(1000, ge=0, description="Alert when the process count is above this.")


class Alert(BaseModel):
    """A finding derived from one LogRecord crossing a threshold."""

    id: str = Field(..., description="Alert id (uuid4).")
    organization_id: str = Field(..., description="Owning organization.")
    title: str = Field(..., description="Short title for the alert.")
    description: str = Field(..., description="Human-readable description.")
    severity: AlertSeverity = Field(..., description="Alert severity.")
    status: AlertStatus = Field(AlertStatus.open, description="Lifecycle status.")
    source: str = Field(..., description="Where the alert came from (usually a host).")
    created_at: datetime = Field(..., description="UTC creation timestamp.")
    updated_at: datetime = Field(..., description="UTC timestamp of the last status change.")
    resolved_at: Optional[datetime] = Field(default=None, description="UTC timestamp of resolution, if resolved.")
    related_logs: List[str] = Field(default_factory=list, description="Ids of the LogRecords behind this alert.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Measured value and threshold.")


class AlertStatusUpdate(BaseModel):
    """Request body for PUT /alerts/{id}/status."""

    status: AlertStatus = Field(..., description="Target status (OPEN|RESOLVED|IGNORED).")


class AlertTrends(BaseModel):
    """Aggregate view over the alerts created in a time window."""

    start: datetime = Field(..., description="Window start (inclusive).")
    end: datetime = Field(..., description="Window end (inclusive).")
    total_alerts: int = Field(0, ge=0, description="Number of alerts aggregated.")
    alerts_by_severity: Dict[str, int] = Field(default_factory=dict, description="Counts per severity.")
    alerts_by_status: Dict[str, int] = Field(default_factory=dict, description="Counts per status.")
    time_distribution: Dict[str, int] = Field(default_factory=dict, description="Counts per hour of day (HH:00).")
    top_sources: Dict[str, int] = Field(default_factory=dict, description="Counts per alert source.")
    truncated: bool = Field(
        False, description="True when the window held more alerts than the page bound and only the bound was read."
    )


class AlertCounts(BaseModel):
    """Per-status and per-severity alert counts for one organization."""

    by_status: Dict[str, int] = Field(default_factory=dict, description="Counts per status.")
    by_severity: Dict[str, int] = Field(default_factory=dict, description="Counts per severity.")
    in_range: Optional[int] = Field(default=None, description="Alerts created in [start, end] when a range was given.")
