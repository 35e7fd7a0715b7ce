"""
Pydantic schemas for export requests, dispatch messages and status views.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from ..constants import ExportFormat, ExportType, JobStatus, TransactionStatus
from ..db.db_base import as_utc

MAX_DATE_RANGE = timedelta(days=365)


class ExportFilters(BaseModel):
    """Upstream query filters persisted with the job."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    channel: Optional[str] = None
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None

    # Conversation search only
    query: Optional[str] = None
    status: Optional[str] = None
    last_message_type: Optional[str] = None
    last_message_direction: Optional[str] = None
    sort_by: Optional[str] = None

    @field_validator("start_date", "end_date")
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Dates without an offset are taken as UTC."""
        return as_utc(v)

    @model_validator(mode="after")
    def check_date_range(self) -> "ExportFilters":
        if self.start_date and self.end_date:
            if self.end_date < self.start_date:
                raise ValueError("end_date must not be before start_date")
            if self.end_date - self.start_date > MAX_DATE_RANGE:
                raise ValueError("Date range cannot exceed 1 year")
        return self


class ExportRequest(BaseModel):
    """Everything needed to price and start an export for one location."""

    location_id: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    export_type: ExportType
    format: ExportFormat = ExportFormat.CSV
    filters: ExportFilters = Field(default_factory=ExportFilters)
    user_id: Optional[str] = None
    notification_email: Optional[str] = None


class DispatchMessage(BaseModel):
    """
    Queue message that asks a worker to run the next batch of a job.

    `attempt` is the job's retry count and `batch` its current batch number
    at publish time; a worker ignores messages that no longer match.
    """

    model_config = ConfigDict(populate_by_name=True)

    export_job_id: str = Field(..., alias="exportJobId")
    attempt: int = Field(default=0, ge=0)
    batch: int = Field(default=0, ge=0)


class BillingView(BaseModel):
    transaction_id: str
    status: TransactionStatus
    final_amount: Decimal
    charge_ids: List[str] = Field(default_factory=list)
    needs_reconciliation: bool = False


class JobProgress(BaseModel):
    processed: int
    total: int

    @computed_field
    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, round(self.processed * 100 / self.total))


class JobStatusView(BaseModel):
    """Read-only projection of a job and its billing transaction."""

    job_id: str
    location_id: str
    status: JobStatus
    export_type: ExportType
    format: ExportFormat
    progress: JobProgress
    current_batch: int
    total_batches: int
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    output_location: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    billing: Optional[BillingView] = None


class StartExportResult(BaseModel):
    """Outcome of a start-export request once the charge went through."""

    job_id: str
    transaction_id: str
    status: JobStatus
    total_items: int
    final_amount: Decimal
    dispatch_error: Optional[str] = None
