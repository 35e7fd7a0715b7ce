"""
Export job orchestration: charge, create, dispatch and advance export jobs.

A job exists only for a charged billing transaction. Every job mutation is a
conditional update on (status, version), so two workers racing on the same
job cannot both advance it; the loser gets ConcurrentModificationError.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clients.crm_client import CRMClient
from ..config import ExportConfig, get_config
from ..constants import ExportType, ItemCategory, JobStatus, TransactionStatus
from ..db.db_base import utc_now
from ..db.db_billing_models import BillingTransaction
from ..db.db_export_job_models import ExportJob
from ..exceptions import (
    AuthenticationFailedError,
    BatchError,
    ChargeFailedError,
    ConcurrentModificationError,
    DispatchFailedError,
    ErrorCode,
    ExternalServiceError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NoCredentialError,
    RepositoryError,
    UpstreamAuthExpiredError,
    UpstreamRequestError,
    ValidationError,
)
from ..processing.dispatcher import JobDispatcher
from ..processing.export_sinks import ExportSink
from ..processing.export_sources import ExportSource, build_source
from ..schemas.billing_schemas import ChargeResult, ItemCounts, PricingEstimate
from ..schemas.export_job_schemas import (
    BillingView,
    DispatchMessage,
    ExportFilters,
    ExportRequest,
    JobProgress,
    JobStatusView,
    StartExportResult,
)
from ..utils.crud_helpers import create_record, get_record_by_id, list_records, require_record
from ..utils.logger import get_logger
from .call_executor import AuthenticatedCallExecutor
from .notification_service import CompletionNotifier
from .pricing_service import PricingEngine

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED)

CREDENTIAL_ERRORS = (NoCredentialError, UpstreamAuthExpiredError, AuthenticationFailedError)


class ExportJobService:
    """Starts export jobs and owns every export job state transition."""

    def __init__(
        self,
        session: Session,
        executor: AuthenticatedCallExecutor,
        pricing: PricingEngine,
        dispatcher: JobDispatcher,
        client: Optional[CRMClient] = None,
        config: Optional[ExportConfig] = None,
        sink: Optional[ExportSink] = None,
        notifier: Optional[CompletionNotifier] = None,
    ):
        self.session = session
        self.executor = executor
        self.pricing = pricing
        self.dispatcher = dispatcher
        self.client = client or executor.lifecycle.client
        self.config = config or get_config().export
        self.sink = sink
        self.notifier = notifier
        self.logger = get_logger()

    # Sources

    def source_for(self, export_type: ExportType) -> ExportSource:
        page_size = (
            self.config.message_page_size
            if ExportType(export_type) == ExportType.MESSAGES
            else self.config.conversation_page_size
        )
        return build_source(export_type, self.client, page_size)

    def count_items(self, request: ExportRequest) -> ItemCounts:
        source = self.source_for(request.export_type)
        return self.executor.execute(
            request.location_id,
            lambda token: source.count_items(token, request.location_id, request.filters),
        )

    # Estimates and starts

    def estimate_export(self, request: ExportRequest) -> PricingEstimate:
        """Price an export without charging anything."""
        counts = self.count_items(request)
        return self.pricing.estimate(counts, request.location_id)

    def start_export(self, request: ExportRequest) -> StartExportResult:
        """
        Charge the company wallet and create a job for the export.

        The charge outcome is committed on the transaction before the job row
        is created, and the job only exists once every meter charge succeeded.
        If the job cannot be created the charged transaction is flagged for
        reconciliation. A failed dispatch does not undo the charge: the job
        stays pending with an error message and the stale-job sweep dispatches
        it again.

        Args:
            request: Export scope, type, format and filters

        Returns:
            StartExportResult for the new job

        Raises:
            ValidationError: If there is nothing to export
            InsufficientFundsError: If the wallet cannot cover the charge
            ChargeFailedError: If an upstream charge failed
            RepositoryError: If the charge outcome or the job could not be stored;
                the transaction is flagged for reconciliation where possible
            NoCredentialError, UpstreamAuthExpiredError, AuthenticationFailedError:
                If no usable credential exists for the location
        """
        counts = self.count_items(request)
        if counts.total == 0:
            raise ValidationError(
                "No items match the export filters",
                error_code=ErrorCode.VALIDATION_FAILED,
                field="filters",
                location_id=request.location_id,
            )

        estimate = self.pricing.estimate(counts, request.location_id)
        self.pricing.ensure_funds(request.company_id, request.location_id)

        meter_charges = self.pricing.build_meter_charges(counts)
        transaction = create_record(
            self.session,
            BillingTransaction,
            {
                "location_id": request.location_id,
                "company_id": request.company_id,
                "export_type": request.export_type.value,
                "user_id": request.user_id,
                "conversations_count": counts.conversations,
                "sms_count": counts.sms_messages,
                "email_count": counts.email_messages,
                **self._unit_price_columns(estimate),
                "discount_percent": estimate.discount_percent,
                "base_amount": estimate.base_amount,
                "discount_amount": estimate.discount_amount,
                "final_amount": estimate.final_amount,
                "status": TransactionStatus.PENDING.value,
                "meter_charges": [charge.model_dump() for charge in meter_charges],
            },
        )

        result = self.pricing.charge(request.company_id, meter_charges, request.location_id)
        if not result.succeeded:
            self._record_failed_charge(transaction, result)

        self._save_charge_outcome(transaction, result, TransactionStatus.CHARGED)
        job = self._create_job(request, transaction, counts.total)
        job = self.dispatch_job(job.id)

        return StartExportResult(
            job_id=job.id,
            transaction_id=transaction.id,
            status=JobStatus(job.status),
            total_items=job.total_items,
            final_amount=estimate.final_amount,
            dispatch_error=job.error_message if job.status == JobStatus.PENDING.value else None,
        )

    @staticmethod
    def _unit_price_columns(estimate: PricingEstimate) -> Dict[str, Any]:
        prices = estimate.breakdown
        return {
            "conversations_unit_price": prices[ItemCategory.CONVERSATIONS].unit_price,
            "sms_unit_price": prices[ItemCategory.SMS_WHATSAPP].unit_price,
            "email_unit_price": prices[ItemCategory.EMAIL].unit_price,
        }

    def _save_charge_outcome(
        self,
        transaction: BillingTransaction,
        result: ChargeResult,
        status: TransactionStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Commit what was billed upstream onto the transaction.

        If that commit fails the outcome is written once more, flagged for
        reconciliation, and RepositoryError is raised so no job is created.
        The charge ids are logged if the second write fails as well.
        """
        transaction_id = transaction.id
        values = {
            "status": status.value,
            "charge_ledger": [entry.model_dump() for entry in result.entries],
            "charge_ids": ",".join(result.charge_ids) or None,
            "needs_reconciliation": result.needs_reconciliation,
            "error_message": error_message,
        }
        try:
            self._apply(transaction, values)
            self.session.commit()
            return
        except SQLAlchemyError as e:
            self.session.rollback()
            failure = e

        self.logger.error(
            "Failed to record wallet charge outcome",
            extra={"transaction_id": transaction_id, "charge_ids": result.charge_ids},
        )
        values["needs_reconciliation"] = True
        values["error_message"] = f"Charge outcome was not recorded: {failure}"
        try:
            self._apply(transaction, values)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(
                "Charged transaction left unrecorded",
                extra={
                    "transaction_id": transaction_id,
                    "charge_ids": result.charge_ids,
                    "status": status.value,
                },
            )
            failure = e

        raise RepositoryError(
            "Failed to record wallet charge outcome",
            cause=failure,
            transaction_id=transaction_id,
            charge_ids=result.charge_ids,
            needs_reconciliation=True,
        )

    @staticmethod
    def _apply(record: Any, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            setattr(record, key, value)

    def _record_failed_charge(self, transaction: BillingTransaction, result: ChargeResult) -> None:
        """Persist the charge ledger on the failed transaction and raise the matching error."""
        error = result.error
        error_message = str(error) if error else "Charge failed"
        self._save_charge_outcome(transaction, result, TransactionStatus.FAILED, error_message)

        context = {
            "transaction_id": transaction.id,
            "company_id": transaction.company_id,
            "charge_ids": result.charge_ids,
            "needs_reconciliation": result.needs_reconciliation,
        }
        if isinstance(error, CREDENTIAL_ERRORS):
            raise error
        if isinstance(error, UpstreamRequestError) and error.http_status == 402:
            raise InsufficientFundsError(cause=error, **context) from error
        raise ChargeFailedError(
            f"Wallet charge failed: {error_message}", cause=error, **context
        ) from error

    def _create_job(
        self, request: ExportRequest, transaction: BillingTransaction, total_items: int
    ) -> ExportJob:
        """Create the job for a transaction whose charge is already committed."""
        batch_size = self.config.batch_size
        transaction_id = transaction.id
        try:
            job = create_record(
                self.session,
                ExportJob,
                {
                    "location_id": request.location_id,
                    "company_id": request.company_id,
                    "billing_transaction_id": transaction_id,
                    "user_id": request.user_id,
                    "notification_email": request.notification_email,
                    "export_type": request.export_type.value,
                    "format": request.format.value,
                    "filters": request.filters.model_dump(mode="json", exclude_none=True),
                    "total_items": total_items,
                    "processed_items": 0,
                    "batch_size": batch_size,
                    "current_batch": 0,
                    "total_batches": math.ceil(total_items / batch_size),
                    "retry_count": 0,
                    "max_retries": self.config.max_retries,
                    "status": JobStatus.PENDING.value,
                    "version": 0,
                },
                commit=False,
            )
            transaction.export_job_id = job.id
            self.session.commit()
        except (SQLAlchemyError, RepositoryError) as e:
            self.session.rollback()
            self._flag_for_reconciliation(transaction_id, f"Export job was not created: {e}")
            raise RepositoryError(
                "Failed to create export job for charged transaction",
                cause=e,
                transaction_id=transaction_id,
                needs_reconciliation=True,
            )

        self.logger.info(
            "Export job created",
            extra={
                "export_job_id": job.id,
                "transaction_id": transaction_id,
                "total_items": total_items,
                "total_batches": job.total_batches,
            },
        )
        return job

    def _flag_for_reconciliation(self, transaction_id: str, reason: str) -> None:
        try:
            self.session.query(BillingTransaction).filter(
                BillingTransaction.id == transaction_id
            ).update(
                {"needs_reconciliation": True, "error_message": reason},
                synchronize_session=False,
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            self.logger.error(
                "Could not flag charged transaction for reconciliation",
                extra={"transaction_id": transaction_id, "reason": reason, "error": str(e)},
            )
            raise RepositoryError(
                "Failed to flag charged transaction for reconciliation",
                cause=e,
                transaction_id=transaction_id,
            )
        self.logger.error(
            "Charged transaction flagged for reconciliation",
            extra={"transaction_id": transaction_id, "reason": reason},
        )

    # Dispatch

    def _message(self, job: ExportJob) -> DispatchMessage:
        return DispatchMessage(
            export_job_id=job.id, attempt=job.retry_count, batch=job.current_batch
        )

    def dispatch_job(self, job_id: str) -> ExportJob:
        """
        Move a pending job to processing and publish its dispatch message.

        If publishing fails the job is put back to pending with the error
        recorded, and is returned rather than raised.
        """
        job = self.get_job(job_id)
        job = self.mark_processing(job)
        try:
            self.dispatcher.dispatch(self._message(job))
        except DispatchFailedError as e:
            return self._revert_dispatch(job, JobStatus.PENDING, e)
        return job

    def _revert_dispatch(
        self, job: ExportJob, status: JobStatus, error: DispatchFailedError
    ) -> ExportJob:
        self.logger.warning(
            "Dispatch failed, job left for the stale-job sweep",
            extra={"export_job_id": job.id, "status": status.value},
        )
        return self._guarded_update(
            job,
            [JobStatus.PROCESSING],
            {"status": status.value, "error_message": f"Dispatch failed: {error.message}"},
        )

    # Queries

    def get_job(self, job_id: str, location_id: Optional[str] = None) -> ExportJob:
        return require_record(self.session, ExportJob, job_id, location_id)

    def find_job(self, job_id: str) -> Optional[ExportJob]:
        return get_record_by_id(self.session, ExportJob, job_id)

    def get_job_status(self, job_id: str, location_id: Optional[str] = None) -> JobStatusView:
        """Read-only projection of a job and its billing transaction."""
        job = self.get_job(job_id, location_id)
        transaction = get_record_by_id(self.session, BillingTransaction, job.billing_transaction_id)
        return self._view(job, transaction)

    def list_recent_jobs(self, location_id: str, limit: Optional[int] = None) -> List[JobStatusView]:
        jobs = list_records(
            self.session,
            ExportJob,
            location_id=location_id,
            limit=limit or self.config.recent_jobs_limit,
        )
        return [self._view(job) for job in jobs]

    def list_active_jobs(self, location_id: str) -> List[JobStatusView]:
        jobs = (
            self.session.query(ExportJob)
            .filter(
                ExportJob.location_id == location_id,
                ExportJob.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .order_by(ExportJob.created_at.desc())
            .all()
        )
        return [self._view(job) for job in jobs]

    @staticmethod
    def _view(job: ExportJob, transaction: Optional[BillingTransaction] = None) -> JobStatusView:
        billing = None
        if transaction is not None:
            billing = BillingView(
                transaction_id=transaction.id,
                status=TransactionStatus(transaction.status),
                final_amount=transaction.final_amount,
                charge_ids=[c for c in (transaction.charge_ids or "").split(",") if c],
                needs_reconciliation=bool(transaction.needs_reconciliation),
            )
        return JobStatusView(
            job_id=job.id,
            location_id=job.location_id,
            status=JobStatus(job.status),
            export_type=ExportType(job.export_type),
            format=job.format,
            progress=JobProgress(processed=job.processed_items, total=job.total_items),
            current_batch=job.current_batch,
            total_batches=job.total_batches,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            error_message=job.error_message,
            output_location=job.output_location,
            filters=job.filters or {},
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            billing=billing,
        )

    def filters_for(self, job: ExportJob) -> ExportFilters:
        return ExportFilters.model_validate(job.filters or {})

    # Pause and resume

    def pause_job(self, job_id: str, location_id: Optional[str] = None) -> ExportJob:
        """Pause a processing job; the in-flight batch is discarded by its worker."""
        job = self.get_job(job_id, location_id)
        self._require_status(job, [JobStatus.PROCESSING], "pause")
        job = self._guarded_update(job, [JobStatus.PROCESSING], {"status": JobStatus.PAUSED.value})
        self.logger.info("Export job paused", extra={"export_job_id": job.id})
        return job

    def resume_job(self, job_id: str, location_id: Optional[str] = None) -> ExportJob:
        """
        Resume a paused job from its persisted cursor.

        Raises:
            InvalidStateTransitionError: If the job is not paused
            DispatchFailedError: If the dispatch message could not be published;
                the job is paused again
        """
        job = self.get_job(job_id, location_id)
        self._require_status(job, [JobStatus.PAUSED], "resume")
        job = self._guarded_update(
            job,
            [JobStatus.PAUSED],
            {"status": JobStatus.PROCESSING.value, "last_processed_at": utc_now()},
        )
        try:
            self.dispatcher.dispatch(self._message(job))
        except DispatchFailedError as e:
            self._revert_dispatch(job, JobStatus.PAUSED, e)
            raise
        self.logger.info("Export job resumed", extra={"export_job_id": job.id})
        return job

    # Worker-facing transitions

    def mark_processing(self, job: ExportJob) -> ExportJob:
        self._require_status(job, [JobStatus.PENDING], "start")
        now = utc_now()
        return self._guarded_update(
            job,
            [JobStatus.PENDING],
            {
                "status": JobStatus.PROCESSING.value,
                "started_at": job.started_at or now,
                "last_processed_at": now,
                "error_message": None,
            },
        )

    def record_batch(self, job: ExportJob, record_count: int, next_cursor: Optional[str]) -> ExportJob:
        """Advance a processing job past one written batch."""
        return self._guarded_update(
            job,
            [JobStatus.PROCESSING],
            {
                "processed_items": job.processed_items + record_count,
                "cursor": next_cursor,
                "current_batch": job.current_batch + 1,
                "last_processed_at": utc_now(),
                "error_message": None,
            },
        )

    def complete_job(self, job: ExportJob, output_location: str) -> ExportJob:
        now = utc_now()
        job = self._guarded_update(
            job,
            [JobStatus.PROCESSING],
            {
                "status": JobStatus.COMPLETED.value,
                "cursor": None,
                "output_location": output_location,
                "completed_at": now,
                "last_processed_at": now,
                "error_message": None,
            },
        )
        self.logger.info(
            "Export job completed",
            extra={
                "export_job_id": job.id,
                "processed_items": job.processed_items,
                "output_location": output_location,
            },
        )
        self._notify_completed(job, output_location)
        return job

    def _notify_completed(self, job: ExportJob, output_location: str) -> None:
        if self.notifier is None or not job.notification_email:
            return
        try:
            self.notifier.notify(job, output_location)
        except ExternalServiceError as e:
            # The export is complete; the link stays available from the job status
            self.logger.warning(
                "Completion notification failed",
                extra={"export_job_id": job.id, "error": e.message},
            )

    def fail_job(self, job: ExportJob, error_message: str) -> ExportJob:
        """Fail an active job and discard the output written for it so far."""
        job = self._guarded_update(
            job,
            ACTIVE_STATUSES,
            {"status": JobStatus.FAILED.value, "error_message": error_message},
        )
        self.logger.error(
            "Export job failed",
            extra={
                "export_job_id": job.id,
                "retry_count": job.retry_count,
                "error_message": error_message,
            },
        )
        self._discard_output(job)
        return job

    def _discard_output(self, job: ExportJob) -> None:
        if self.sink is None:
            return
        try:
            self.sink.abort(job.id)
        except BatchError as e:
            self.logger.warning(
                "Failed to discard export output",
                extra={"export_job_id": job.id, "error": e.message},
            )

    def record_batch_failure(self, job: ExportJob, error_message: str) -> ExportJob:
        """
        Retry the current batch, or fail the job once retries are exhausted.

        Progress up to the last recorded batch is kept; the retry starts from
        the persisted cursor.
        """
        if job.retry_count >= job.max_retries:
            return self.fail_job(
                job, f"Retries exhausted after {job.retry_count} attempts: {error_message}"
            )
        return self._retry(job, error_message)

    def _retry(self, job: ExportJob, error_message: Optional[str]) -> ExportJob:
        job = self._guarded_update(
            job,
            [JobStatus.PROCESSING],
            {
                "retry_count": job.retry_count + 1,
                "last_processed_at": utc_now(),
                "error_message": error_message,
            },
        )
        self.logger.warning(
            "Retrying export batch",
            extra={
                "export_job_id": job.id,
                "retry_count": job.retry_count,
                "batch": job.current_batch,
            },
        )
        try:
            self.dispatcher.dispatch(self._message(job))
        except DispatchFailedError as e:
            return self._revert_dispatch(job, JobStatus.PENDING, e)
        return job

    def dispatch_next_batch(self, job: ExportJob) -> None:
        """
        Publish the message for the job's next batch.

        A failure is logged and left to the stale-job sweep, which notices the
        job stopped advancing.
        """
        try:
            self.dispatcher.dispatch(self._message(job))
        except DispatchFailedError:
            self.logger.warning(
                "Failed to dispatch next batch, waiting for stale-job sweep",
                extra={"export_job_id": job.id, "batch": job.current_batch},
            )

    # Stale jobs

    def sweep_stale_jobs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Recover jobs that stopped advancing.

        Processing jobs untouched for longer than the staleness window are
        dispatched again with an incremented retry count, or failed once the
        retry budget is spent. Pending jobs whose dispatch failed, or that were
        never dispatched, are dispatched again.

        Returns:
            Counts of re-dispatched, failed and skipped jobs
        """
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.config.stale_after_minutes)
        summary = {"redispatched": 0, "failed": 0, "skipped": 0}

        stale_processing = (
            self.session.query(ExportJob)
            .filter(
                ExportJob.status == JobStatus.PROCESSING.value,
                ExportJob.last_processed_at < cutoff,
            )
            .all()
        )
        for job in stale_processing:
            try:
                if job.retry_count >= job.max_retries:
                    self.fail_job(job, "Job stalled and retries are exhausted")
                    summary["failed"] += 1
                else:
                    self._retry(job, "Job stalled, re-dispatched by sweep")
                    summary["redispatched"] += 1
            except ConcurrentModificationError:
                summary["skipped"] += 1

        stuck_pending = (
            self.session.query(ExportJob)
            .filter(
                ExportJob.status == JobStatus.PENDING.value,
                (ExportJob.error_message.isnot(None)) | (ExportJob.created_at < cutoff),
            )
            .all()
        )
        for job in stuck_pending:
            try:
                self.dispatch_job(job.id)
                summary["redispatched"] += 1
            except ConcurrentModificationError:
                summary["skipped"] += 1

        self.logger.info("Stale job sweep finished", extra=summary)
        return summary

    # Guarded updates

    def _require_status(self, job: ExportJob, allowed: Iterable[JobStatus], action: str) -> None:
        allowed = list(allowed)
        if job.status not in [s.value for s in allowed]:
            raise InvalidStateTransitionError(
                f"Cannot {action} export job in status {job.status}",
                export_job_id=job.id,
                status=job.status,
                allowed=[s.value for s in allowed],
            )

    def _guarded_update(
        self, job: ExportJob, expected: Iterable[JobStatus], values: Dict[str, Any]
    ) -> ExportJob:
        """
        Apply `values` only if the job still has an expected status and the
        version it was read at; bumps the version.

        Raises:
            ConcurrentModificationError: If another writer got there first
        """
        expected_values = [s.value for s in expected]
        values = {
            **values,
            "version": ExportJob.version + 1,
            "updated_at": utc_now(),
        }
        try:
            updated = (
                self.session.query(ExportJob)
                .filter(
                    ExportJob.id == job.id,
                    ExportJob.status.in_(expected_values),
                    ExportJob.version == job.version,
                )
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                self.session.rollback()
                raise ConcurrentModificationError(
                    "Export job was modified concurrently",
                    export_job_id=job.id,
                    expected_status=expected_values,
                    expected_version=job.version,
                )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                "Failed to update export job", cause=e, export_job_id=job.id
            )

        self.session.refresh(job)
        return job

    def _commit(self, operation: str, **context) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                f"Export job {operation} failed", cause=e, operation=operation, **context
            )
