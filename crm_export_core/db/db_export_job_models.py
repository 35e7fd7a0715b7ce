"""
Export job model.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text

from .db_base import JSON, TimestampMixin, UUIDMixin
from .db_config import Base


class ExportJob(Base, UUIDMixin, TimestampMixin):
    """Resumable, batched export bound to a charged billing transaction."""

    __tablename__ = "export_jobs"

    location_id = Column(String(100), nullable=False)
    company_id = Column(String(100), nullable=False)
    billing_transaction_id = Column(
        String(36), ForeignKey("billing_transactions.id"), nullable=False, unique=True
    )
    user_id = Column(String(100), nullable=True)
    notification_email = Column(String(255), nullable=True)

    export_type = Column(String(20), nullable=False)
    format = Column(String(10), nullable=False)
    filters = Column(JSON, nullable=True)

    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    batch_size = Column(Integer, nullable=False)
    current_batch = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=False, default=0)
    cursor = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    output_location = Column(String(1000), nullable=True)

    last_processed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Bumped on every guarded update
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'paused')",
            name="ck_export_job_status",
        ),
        CheckConstraint(
            "status != 'completed' OR cursor IS NULL", name="ck_completed_job_has_no_cursor"
        ),
        CheckConstraint("processed_items >= 0", name="ck_processed_items_non_negative"),
        CheckConstraint("retry_count <= max_retries", name="ck_retry_count_bounded"),
        Index("ix_export_jobs_location_created", "location_id", "created_at"),
        Index("ix_export_jobs_status_last_processed", "status", "last_processed_at"),
    )
