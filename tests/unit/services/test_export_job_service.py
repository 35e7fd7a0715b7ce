"""
Tests for ExportJobService: starting exports, guarded transitions and the
stale-job sweep.
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from crm_export_core.constants import (
    ExportFormat,
    ExportType,
    JobStatus,
    TransactionStatus,
)
from crm_export_core.db import BillingTransaction, ExportJob
from crm_export_core.db.db_base import utc_now
from crm_export_core.exceptions import (
    BatchError,
    ChargeFailedError,
    ConcurrentModificationError,
    DispatchFailedError,
    ExternalServiceError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    RepositoryError,
    UpstreamRequestError,
    ValidationError,
)
from crm_export_core.schemas.billing_schemas import ItemCounts
from crm_export_core.schemas.export_job_schemas import DispatchMessage, ExportRequest
from crm_export_core.services import export_job_service as export_job_service_module
from crm_export_core.services.export_job_service import ExportJobService
from tests.fixtures.factories import (
    BillingTransactionFactory,
    ExportJobFactory,
    LocationCredentialFactory,
)


@pytest.fixture
def export_request():
    return ExportRequest(
        location_id="loc-1",
        company_id="comp-1",
        export_type=ExportType.MESSAGES,
        format=ExportFormat.JSON,
        user_id="user-1",
    )


@pytest.fixture
def credential():
    return LocationCredentialFactory(location_id="loc-1", company_id="comp-1")


@pytest.fixture
def two_messages(mock_client):
    mock_client.export_messages.return_value = {
        "messages": [{"id": "m1", "type": "TYPE_SMS"}, {"id": "m2", "type": "TYPE_EMAIL"}],
        "total": 2,
    }
    return mock_client


class TestStartExport:
    """Test charging and job creation."""

    def test_charges_creates_and_dispatches_job(
        self, job_service, export_request, credential, two_messages, dispatcher, db_session
    ):
        """Test a successful start leaves a charged transaction linked to a processing job."""
        two_messages.create_charge.side_effect = ["ch-1", "ch-2"]

        result = job_service.start_export(export_request)

        assert result.status == JobStatus.PROCESSING
        assert result.total_items == 2
        assert result.dispatch_error is None

        job = db_session.get(ExportJob, result.job_id)
        transaction = db_session.get(BillingTransaction, result.transaction_id)
        assert transaction.status == TransactionStatus.CHARGED.value
        assert transaction.charge_ids == "ch-1,ch-2"
        assert transaction.export_job_id == job.id
        assert job.billing_transaction_id == transaction.id
        assert job.total_batches == 1
        assert job.started_at is not None
        dispatcher.dispatch.assert_called_once_with(
            DispatchMessage(export_job_id=job.id, attempt=0, batch=0)
        )

    def test_dispatch_failure_keeps_charged_job_pending(
        self, job_service, export_request, credential, two_messages, dispatcher, db_session
    ):
        """Test a failed dispatch records the error and does not undo the charge."""
        two_messages.create_charge.side_effect = ["ch-1", "ch-2"]
        dispatcher.dispatch.side_effect = DispatchFailedError("queue down")

        result = job_service.start_export(export_request)

        assert result.status == JobStatus.PENDING
        assert result.dispatch_error.startswith("Dispatch failed")
        transaction = db_session.get(BillingTransaction, result.transaction_id)
        assert transaction.status == TransactionStatus.CHARGED.value

    def test_zero_items_is_rejected_before_charging(
        self, job_service, export_request, credential, mock_client, db_session
    ):
        mock_client.export_messages.return_value = {"messages": [], "total": 0}

        with pytest.raises(ValidationError):
            job_service.start_export(export_request)

        mock_client.create_charge.assert_not_called()
        assert db_session.query(BillingTransaction).count() == 0

    def test_empty_wallet_is_rejected_before_charging(
        self, job_service, export_request, credential, two_messages, db_session
    ):
        two_messages.has_funds.return_value = False

        with pytest.raises(InsufficientFundsError):
            job_service.start_export(export_request)

        two_messages.create_charge.assert_not_called()
        assert db_session.query(ExportJob).count() == 0

    def test_payment_required_maps_to_insufficient_funds(
        self, job_service, export_request, credential, two_messages, db_session
    ):
        """Test a 402 from the first charge fails the transaction without reconciliation."""
        two_messages.create_charge.side_effect = UpstreamRequestError(
            "payment required", http_status=402
        )

        with pytest.raises(InsufficientFundsError):
            job_service.start_export(export_request)

        transaction = db_session.query(BillingTransaction).one()
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.needs_reconciliation is False
        assert db_session.query(ExportJob).count() == 0

    def test_partial_charge_is_recorded_and_no_job_created(
        self, job_service, export_request, credential, mock_client, dispatcher, db_session
    ):
        """Test the second of three meter charges failing leaves a reconcilable ledger."""
        mock_client.create_charge.side_effect = [
            "charge-1",
            UpstreamRequestError("boom", http_status=500),
            "charge-3",
        ]
        counts = ItemCounts(conversations=500, sms_messages=300, email_messages=50)

        with patch.object(ExportJobService, "count_items", return_value=counts):
            with pytest.raises(ChargeFailedError) as exc_info:
                job_service.start_export(export_request)

        assert exc_info.value.context["charge_ids"] == ["charge-1"]
        assert exc_info.value.context["needs_reconciliation"] is True

        transaction = db_session.query(BillingTransaction).one()
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.needs_reconciliation is True
        assert transaction.charge_ids == "charge-1"
        assert [entry["succeeded"] for entry in transaction.charge_ledger] == [True, False]
        assert transaction.discount_percent == 10
        assert db_session.query(ExportJob).count() == 0
        dispatcher.dispatch.assert_not_called()

    def test_charge_outcome_is_kept_when_its_commit_fails(
        self, job_service, export_request, credential, two_messages, dispatcher, db_session
    ):
        """Test billed charges stay on record and are flagged when the charged commit fails."""
        two_messages.create_charge.side_effect = ["ch-1", "ch-2"]
        real_commit = db_session.commit
        failed = []

        def commit():
            charged = any(
                isinstance(obj, BillingTransaction)
                and obj.status == TransactionStatus.CHARGED.value
                for obj in db_session.dirty
            )
            if charged and not failed:
                failed.append(True)
                raise OperationalError("COMMIT", {}, Exception("connection reset"))
            return real_commit()

        with patch.object(db_session, "commit", side_effect=commit):
            with pytest.raises(RepositoryError) as exc_info:
                job_service.start_export(export_request)

        assert failed
        assert exc_info.value.context["charge_ids"] == ["ch-1", "ch-2"]
        transaction = db_session.query(BillingTransaction).one()
        assert transaction.status == TransactionStatus.CHARGED.value
        assert transaction.charge_ids == "ch-1,ch-2"
        assert transaction.needs_reconciliation is True
        assert [entry["charge_id"] for entry in transaction.charge_ledger] == ["ch-1", "ch-2"]
        assert db_session.query(ExportJob).count() == 0
        dispatcher.dispatch.assert_not_called()

    def test_job_creation_failure_flags_charged_transaction(
        self, job_service, export_request, credential, two_messages, dispatcher, db_session
    ):
        two_messages.create_charge.side_effect = ["ch-1", "ch-2"]
        real_create = export_job_service_module.create_record

        def create(session, model_class, data, commit=True):
            if model_class is ExportJob:
                raise RepositoryError("insert failed")
            return real_create(session, model_class, data, commit)

        with patch.object(export_job_service_module, "create_record", side_effect=create):
            with pytest.raises(RepositoryError) as exc_info:
                job_service.start_export(export_request)

        assert exc_info.value.context["needs_reconciliation"] is True
        transaction = db_session.query(BillingTransaction).one()
        assert transaction.status == TransactionStatus.CHARGED.value
        assert transaction.charge_ids == "ch-1,ch-2"
        assert transaction.needs_reconciliation is True
        assert transaction.error_message.startswith("Export job was not created")
        assert transaction.export_job_id is None
        dispatcher.dispatch.assert_not_called()

    def test_unexpected_charge_error_fails_transaction_for_reconciliation(
        self, job_service, export_request, credential, two_messages, db_session
    ):
        two_messages.create_charge.side_effect = ["ch-1", KeyError("_id")]

        with pytest.raises(ChargeFailedError):
            job_service.start_export(export_request)

        transaction = db_session.query(BillingTransaction).one()
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.charge_ids == "ch-1"
        assert transaction.needs_reconciliation is True
        assert transaction.charge_ledger[-1]["outcome_unknown"] is True
        assert db_session.query(ExportJob).count() == 0

    def test_estimate_export_does_not_charge(
        self, job_service, export_request, credential, two_messages
    ):
        estimate = job_service.estimate_export(export_request)

        assert estimate.item_counts.sms_messages == 1
        assert estimate.item_counts.email_messages == 1
        two_messages.create_charge.assert_not_called()


class TestGuardedUpdates:
    """Test optimistic concurrency on job transitions."""

    def test_stale_version_is_rejected(self, job_service, db_session):
        """Test a writer holding an old version cannot advance the job."""
        job = ExportJobFactory()
        stale = SimpleNamespace(
            id=job.id, version=0, processed_items=0, current_batch=0, retry_count=0
        )
        job_service.pause_job(job.id)

        with pytest.raises(ConcurrentModificationError):
            job_service.record_batch(stale, 5, "cursor-1")

        db_session.refresh(job)
        assert job.status == JobStatus.PAUSED.value
        assert job.processed_items == 0
        assert job.version == 1

    def test_unexpected_status_is_rejected(self, job_service):
        job = ExportJobFactory(status=JobStatus.PAUSED.value)

        with pytest.raises(ConcurrentModificationError):
            job_service.complete_job(job, "/tmp/out.jsonl")

    def test_record_batch_advances_progress(self, job_service):
        job = ExportJobFactory(total_items=20)

        job = job_service.record_batch(job, 10, "cursor-1")

        assert job.processed_items == 10
        assert job.current_batch == 1
        assert job.cursor == "cursor-1"
        assert job.version == 1

    def test_complete_clears_cursor(self, job_service):
        job = ExportJobFactory(cursor="cursor-9", current_batch=2)

        job = job_service.complete_job(job, "/exports/out.jsonl")

        assert job.status == JobStatus.COMPLETED.value
        assert job.cursor is None
        assert job.output_location == "/exports/out.jsonl"
        assert job.completed_at is not None


class TestCompletionNotification:
    """Test the requester is told when an export is ready."""

    def test_complete_notifies_requester(self, job_service, notifier):
        job = ExportJobFactory(notification_email="owner@example.com")

        job = job_service.complete_job(job, "https://exports.example/out.jsonl")

        notifier.notify.assert_called_once_with(job, "https://exports.example/out.jsonl")

    def test_no_email_means_no_notification(self, job_service, notifier):
        job = ExportJobFactory(notification_email=None)

        job_service.complete_job(job, "/exports/out.jsonl")

        notifier.notify.assert_not_called()

    def test_notification_failure_keeps_job_completed(self, job_service, notifier, db_session):
        job = ExportJobFactory(notification_email="owner@example.com")
        notifier.notify.side_effect = ExternalServiceError("email down", service_name="brevo")

        job_service.complete_job(job, "/exports/out.jsonl")

        db_session.refresh(job)
        assert job.status == JobStatus.COMPLETED.value
        assert job.output_location == "/exports/out.jsonl"


class TestPauseResume:
    """Test operator pause and resume."""

    def test_pause_then_resume_redispatches_current_batch(self, job_service, dispatcher):
        job = ExportJobFactory(current_batch=2, cursor="cursor-2", processed_items=20)

        job_service.pause_job(job.id)
        job = job_service.resume_job(job.id)

        assert job.status == JobStatus.PROCESSING.value
        assert job.cursor == "cursor-2"
        dispatcher.dispatch.assert_called_once_with(
            DispatchMessage(export_job_id=job.id, attempt=0, batch=2)
        )

    @pytest.mark.parametrize(
        "status", [JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED]
    )
    def test_pause_requires_processing(self, job_service, status):
        job = ExportJobFactory(status=status.value)

        with pytest.raises(InvalidStateTransitionError):
            job_service.pause_job(job.id)

    def test_resume_requires_paused(self, job_service):
        job = ExportJobFactory()

        with pytest.raises(InvalidStateTransitionError):
            job_service.resume_job(job.id)

    def test_resume_dispatch_failure_pauses_again(self, job_service, dispatcher, db_session):
        job = ExportJobFactory(status=JobStatus.PAUSED.value)
        dispatcher.dispatch.side_effect = DispatchFailedError("queue down")

        with pytest.raises(DispatchFailedError):
            job_service.resume_job(job.id)

        db_session.refresh(job)
        assert job.status == JobStatus.PAUSED.value
        assert job.error_message.startswith("Dispatch failed")

    def test_location_scoping(self, job_service):
        """Test a job is invisible outside its location."""
        job = ExportJobFactory(location_id="loc-1")

        with pytest.raises(RepositoryError) as exc_info:
            job_service.pause_job(job.id, location_id="loc-other")

        assert exc_info.value.status_code == 404


class TestBatchFailures:
    """Test retry accounting for failed batches."""

    def test_failure_within_budget_retries(self, job_service, dispatcher):
        job = ExportJobFactory(retry_count=0, current_batch=1, cursor="c1")

        job = job_service.record_batch_failure(job, "upstream 503")

        assert job.status == JobStatus.PROCESSING.value
        assert job.retry_count == 1
        assert job.cursor == "c1"
        dispatcher.dispatch.assert_called_once_with(
            DispatchMessage(export_job_id=job.id, attempt=1, batch=1)
        )

    def test_failure_with_exhausted_budget_fails(self, job_service, dispatcher):
        job = ExportJobFactory(retry_count=3, max_retries=3)

        job = job_service.record_batch_failure(job, "upstream 503")

        assert job.status == JobStatus.FAILED.value
        assert job.error_message.startswith("Retries exhausted")
        dispatcher.dispatch.assert_not_called()

    def test_next_batch_dispatch_failure_is_left_to_sweep(self, job_service, dispatcher):
        job = ExportJobFactory()
        dispatcher.dispatch.side_effect = DispatchFailedError("queue down")

        job_service.dispatch_next_batch(job)

        assert job.status == JobStatus.PROCESSING.value


class TestStaleJobSweep:
    """Test recovery of jobs that stopped advancing."""

    def test_sweep(self, job_service, dispatcher, db_session):
        now = utc_now()
        stale = ExportJobFactory(last_processed_at=now - timedelta(minutes=45), retry_count=1)
        exhausted = ExportJobFactory(
            last_processed_at=now - timedelta(minutes=45), retry_count=3, max_retries=3
        )
        recent = ExportJobFactory(last_processed_at=now - timedelta(minutes=5))
        undispatched = ExportJobFactory(
            status=JobStatus.PENDING.value, error_message="Dispatch failed: queue down"
        )

        summary = job_service.sweep_stale_jobs(now=now)

        assert summary == {"redispatched": 2, "failed": 1, "skipped": 0}
        for job in (stale, exhausted, recent, undispatched):
            db_session.refresh(job)
        assert stale.retry_count == 2
        assert stale.status == JobStatus.PROCESSING.value
        assert exhausted.status == JobStatus.FAILED.value
        assert recent.version == 0
        assert undispatched.status == JobStatus.PROCESSING.value
        assert undispatched.error_message is None

        sent = [c.args[0] for c in dispatcher.dispatch.call_args_list]
        assert DispatchMessage(export_job_id=stale.id, attempt=2, batch=0) in sent
        assert DispatchMessage(export_job_id=undispatched.id, attempt=0, batch=0) in sent
        assert all(message.export_job_id != recent.id for message in sent)

    def test_sweep_discards_output_of_failed_job(self, job_service, sink, tmp_path):
        now = utc_now()
        exhausted = ExportJobFactory(
            last_processed_at=now - timedelta(minutes=45),
            retry_count=3,
            max_retries=3,
            current_batch=1,
        )
        sink.write_part(exhausted.id, 1, [{"id": "m1"}], ExportFormat.JSON, [])
        assert (tmp_path / "exports" / exhausted.id).exists()

        summary = job_service.sweep_stale_jobs(now=now)

        assert summary["failed"] == 1
        assert not (tmp_path / "exports" / exhausted.id).exists()

    def test_discard_failure_does_not_undo_failed_status(self, job_service, sink, db_session):
        job = ExportJobFactory()

        with patch.object(sink, "abort", side_effect=BatchError("storage down")):
            job = job_service.fail_job(job, "Job stalled and retries are exhausted")

        db_session.refresh(job)
        assert job.status == JobStatus.FAILED.value


class TestQueries:
    """Test job status projections."""

    def test_status_view_includes_billing(self, job_service):
        transaction = BillingTransactionFactory(charge_ids="ch-1,ch-2")
        job = ExportJobFactory(
            billing_transaction_id=transaction.id, total_items=40, processed_items=10
        )

        view = job_service.get_job_status(job.id, location_id="loc-1")

        assert view.progress.percent == 25
        assert view.billing.transaction_id == transaction.id
        assert view.billing.charge_ids == ["ch-1", "ch-2"]
        assert view.billing.status == TransactionStatus.CHARGED

    def test_active_and_recent_jobs(self, job_service):
        active = ExportJobFactory(status=JobStatus.PAUSED.value)
        done = ExportJobFactory(status=JobStatus.COMPLETED.value)
        ExportJobFactory(location_id="loc-2")

        active_ids = [view.job_id for view in job_service.list_active_jobs("loc-1")]
        recent_ids = {view.job_id for view in job_service.list_recent_jobs("loc-1")}

        assert active_ids == [active.id]
        assert recent_ids == {active.id, done.id}
