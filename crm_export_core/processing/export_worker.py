"""
Batch worker for export jobs.

One dispatch message runs exactly one batch: read up to batch_size records
from the persisted cursor, write them as one numbered part, advance the job,
then dispatch the next batch or finalize the output.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..constants import ExportFormat, JobStatus
from ..context.tenant_context import tenant_context
from ..db.db_export_job_models import ExportJob
from ..exceptions import BatchError, ConcurrentModificationError, UpstreamRequestError
from ..schemas.export_job_schemas import DispatchMessage
from ..services.export_job_service import CREDENTIAL_ERRORS, ExportJobService
from ..utils.logger import get_logger
from .export_sinks import ExportSink


class BatchOutcome(str, Enum):
    SKIPPED = "skipped"
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class ExportBatchWorker:
    """Consumes dispatch messages and runs one export batch per message."""

    def __init__(self, job_service: ExportJobService, sink: ExportSink):
        self.jobs = job_service
        self.executor = job_service.executor
        self.sink = sink
        self.logger = get_logger()

    def process(self, message: DispatchMessage) -> BatchOutcome:
        """
        Run the batch a dispatch message asks for.

        Messages are delivered at least once. A message whose job is gone, no
        longer processing, or has moved past the message's attempt or batch is
        a duplicate and is skipped.
        """
        job = self.jobs.find_job(message.export_job_id)
        if job is None:
            self.logger.warning(
                "Dispatch message for unknown export job",
                extra={"export_job_id": message.export_job_id},
            )
            return BatchOutcome.SKIPPED

        if (
            job.status != JobStatus.PROCESSING.value
            or job.retry_count != message.attempt
            or job.current_batch != message.batch
        ):
            self.logger.info(
                "Skipping stale dispatch message",
                extra={
                    "export_job_id": job.id,
                    "status": job.status,
                    "attempt": message.attempt,
                    "retry_count": job.retry_count,
                    "batch": message.batch,
                    "current_batch": job.current_batch,
                },
            )
            return BatchOutcome.SKIPPED

        with tenant_context(job.location_id, job.company_id):
            try:
                return self._run(job)
            except ConcurrentModificationError:
                self.logger.info(
                    "Export job changed while the batch ran, discarding result",
                    extra={"export_job_id": job.id},
                )
                return BatchOutcome.SKIPPED

    def _run(self, job: ExportJob) -> BatchOutcome:
        # Every record was fetched by an earlier batch; only assembly is left
        if job.current_batch > 0 and job.cursor is None:
            return self._finalize(job)

        source = self.jobs.source_for(job.export_type)
        try:
            records, next_cursor = self._collect_batch(job)
            self.sink.write_part(
                job.id, job.current_batch + 1, records, ExportFormat(job.format), source.columns
            )
        except CREDENTIAL_ERRORS as e:
            return self._fail(job, e.message)
        except (UpstreamRequestError, BatchError) as e:
            return self._batch_failed(job, e.message)

        job = self.jobs.record_batch(job, len(records), next_cursor)
        self.logger.info(
            "Export batch recorded",
            extra={
                "export_job_id": job.id,
                "batch": job.current_batch,
                "records": len(records),
                "processed_items": job.processed_items,
            },
        )

        if next_cursor is not None:
            self.jobs.dispatch_next_batch(job)
            return BatchOutcome.ADVANCED
        return self._finalize(job)

    def _collect_batch(self, job: ExportJob) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Read pages from the job's cursor until the batch is full or data runs out."""
        source = self.jobs.source_for(job.export_type)
        filters = self.jobs.filters_for(job)
        records: List[Dict[str, Any]] = []
        cursor = job.cursor

        while True:
            limit = min(source.page_size, job.batch_size - len(records))
            page = self.executor.execute(
                job.location_id,
                lambda token, c=cursor, n=limit: source.fetch_page(
                    token, job.location_id, filters, c, n
                ),
            )
            records.extend(page.items)
            # An empty page ends the export even if upstream handed out a cursor
            cursor = page.next_cursor if page.items else None
            if cursor is None or len(records) >= job.batch_size:
                return records, cursor

    def _finalize(self, job: ExportJob) -> BatchOutcome:
        try:
            output_location = self.sink.finalize(job.id, job.current_batch, ExportFormat(job.format))
        except BatchError as e:
            return self._batch_failed(job, e.message)
        self.jobs.complete_job(job, output_location)
        return BatchOutcome.COMPLETED

    def _batch_failed(self, job: ExportJob, error_message: str) -> BatchOutcome:
        job = self.jobs.record_batch_failure(job, error_message)
        if job.status == JobStatus.FAILED.value:
            return BatchOutcome.FAILED
        return BatchOutcome.RETRYING

    def _fail(self, job: ExportJob, error_message: str) -> BatchOutcome:
        self.jobs.fail_job(job, error_message)
        return BatchOutcome.FAILED
