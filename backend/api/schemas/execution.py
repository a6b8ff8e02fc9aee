"""Schedule execution schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Optional


class ExecutionProgress(BaseModel):
    """Progress counters of an execution."""

    total_batches: int = Field(default=0, ge=0)
    completed_batches: int = Field(default=0, ge=0)
    total_emails: int = Field(default=0, ge=0)
    processed_emails: int = Field(default=0, ge=0)
    failed_emails: int = Field(default=0, ge=0)
    completion_percentage: int = Field(default=0, ge=0, le=100)


class ExecutionTiming(BaseModel):
    """Timing information of an execution."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None


class ExecutionError(BaseModel):
    """Error recorded on a failed execution."""

    message: str
    details: Optional[Dict[str, Any]] = None


class ExecutionStatusResponse(BaseModel):
    """Latest execution status of a schedule."""

    id: str = Field(description="Execution ID (schedule ID when it never ran)")
    schedule_id: str
    schedule_name: str
    status: str = Field(description="RUNNING, COMPLETED, FAILED or CANCELLED")
    progress: ExecutionProgress
    timing: ExecutionTiming
    error: Optional[ExecutionError] = None


class ProgressUpdate(BaseModel):
    """Counters written by ``ExecutionTracker.update_progress``."""

    total_batches_count: Optional[int] = Field(default=None, ge=0)
    completed_batches_count: Optional[int] = Field(default=None, ge=0)
    total_emails_count: Optional[int] = Field(default=None, ge=0)
    processed_emails_count: Optional[int] = Field(default=None, ge=0)
    failed_emails_count: Optional[int] = Field(default=None, ge=0)


class ExecutionSummary(BaseModel):
    """Counters written when an execution completes."""

    processed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    processing_duration_ms: Optional[int] = Field(default=None, ge=0)
