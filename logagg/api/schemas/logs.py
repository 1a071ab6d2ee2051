from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

# Decoded JSON as it arrives from an agent: a tagged value over
# null/bool/number/string/array/object. Fields are pulled out of it with
# explicit isinstance checks before anything becomes a LogRecord.
WireValue = Union[None, bool, int, float, str, List["WireValue"], Dict[str, "WireValue"]]


class LogLevel(str, Enum):
    """Record levels, lowest first."""

    info = "INFO"
    warn = "WARN"
    error = "ERROR"
    fatal = "FATAL"

    @classmethod
    def lowest(cls) -> "LogLevel":
        return cls.info


class ProcessRecord(BaseModel):
    """One process reported by an agent alongside a LogRecord."""

    id: str = Field(..., description="Process record id (uuid4).")
    log_id: str = Field(..., description="Id of the LogRecord this process was reported with.")
    organization_id: str = Field(..., description="Owning organization.")
    name: str = Field(..., description="Process executable name.")
    pid: int = Field(..., ge=0, description="Operating-system process id.")
    cpu_percent: float = Field(0.0, ge=0, description="CPU percent used by the process.")
    memory_usage: int = Field(0, ge=0, description="Resident memory in bytes.")
    status: str = Field("", description="Process state as reported by the agent (running, sleeping, ...).")
    timestamp: datetime = Field(..., description="UTC time the process snapshot was normalized.")


class LogRecord(BaseModel):
    """Tenant-scoped telemetry unit produced by the ingestion normalizer."""

    id: str = Field(..., description="Record id; derived from broker coordinates when available.")
    organization_id: str = Field(..., description="Owning organization (tenant).")
    timestamp: datetime = Field(..., description="UTC time of the telemetry event.")
    host: str = Field(..., description="Hostname that emitted the telemetry.")
    message: str = Field("", description="Free-text summary of the record.")
    level: LogLevel = Field(LogLevel.info, description="Record level.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Arbitrary structured metadata.")

    process_count: int = Field(0, ge=0, description="Number of processes reported.")
    total_cpu_percent: float = Field(0.0, ge=0, description="Aggregate CPU percent across processes.")
    total_memory_usage: int = Field(0, ge=0, description="Aggregate memory in bytes across processes.")

    environment: Optional[str] = Field(default=None, description="Deployment environment set by enrichment.")
    application: Optional[str] = Field(default=None, description="Application name set by enrichment.")
    component: Optional[str] = Field(default=None, description="Component name set by enrichment.")
    correlation_id: Optional[str] = Field(default=None, description="Correlation id set by enrichment.")
    tags: List[str] = Field(default_factory=list, description="Free-form tags set by enrichment.")
    enriched_at: Optional[datetime] = Field(default=None, description="When enrichment ran; set once.")

    @property
    def is_enriched(self) -> bool:
        return self.enriched_at is not None

    # PUBLIC_INTERFACE
    def enrich(
        self,
        *,
        environment: str,
        application: str,
        component: str,
        at: datetime,
        correlation_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> "LogRecord":
        """Return a copy carrying enrichment fields; already-enriched records are returned unchanged."""
        if self.is_enriched:
            return self
        return self.model_copy(
            update={
                "environment": environment,
                "application": application,
                "component": component,
                "correlation_id": correlation_id or self.correlation_id,
                "tags": list(tags) if tags is not None else list(self.tags),
                "enriched_at": at,
            }
        )


class IngestAccepted(BaseModel):
    """Response for an accepted HTTP ingestion request."""

    id: str = Field(..., description="Id of the stored LogRecord.")
    organization_id: str = Field(..., description="Organization the record was attributed to.")
    processes: int = Field(..., ge=0, description="Number of process records stored.")
    alerts: int = Field(..., ge=0, description="Number of alerts raised by this record.")
