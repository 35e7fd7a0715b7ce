"""
Tests for ExportBatchWorker.

Runs real services against SQLite and a local file sink; only the CRM
client and the queue dispatcher are mocks.
"""

import json
from pathlib import Path

import pytest

from crm_export_core.constants import ExportFormat, JobStatus
from crm_export_core.context.tenant_context import TenantContext
from crm_export_core.exceptions import UpstreamRequestError
from crm_export_core.processing.export_sources import MessageExportSource
from crm_export_core.processing.export_worker import BatchOutcome
from crm_export_core.schemas.export_job_schemas import DispatchMessage
from tests.fixtures.factories import ExportJobFactory, LocationCredentialFactory


def messages(*ids):
    return [{"id": message_id, "type": "TYPE_SMS", "body": f"hi {message_id}"} for message_id in ids]


def read_jsonl(path):
    return [json.loads(line) for line in Path(path).read_text().splitlines()]


@pytest.fixture(autouse=True)
def credential():
    return LocationCredentialFactory(location_id="loc-1", company_id="comp-1")


@pytest.fixture
def job():
    return ExportJobFactory(batch_size=3, total_items=5, total_batches=2)


def message_for(job, attempt=0, batch=None):
    return DispatchMessage(
        export_job_id=job.id,
        attempt=attempt,
        batch=job.current_batch if batch is None else batch,
    )


class TestBatches:
    """Test batch execution across dispatch messages."""

    def test_two_batches_then_complete(self, worker, job, mock_client, dispatcher, db_session):
        """Test a 5 record export with batch size 3 runs as two batches and one output."""
        mock_client.export_messages.side_effect = [
            {"messages": messages("m1", "m2", "m3"), "nextCursor": "c1"},
            {"messages": messages("m4", "m5"), "nextCursor": None},
        ]

        assert worker.process(message_for(job)) == BatchOutcome.ADVANCED

        db_session.refresh(job)
        assert job.current_batch == 1
        assert job.cursor == "c1"
        assert job.processed_items == 3
        dispatcher.dispatch.assert_called_once_with(message_for(job, batch=1))

        assert worker.process(message_for(job, batch=1)) == BatchOutcome.COMPLETED

        db_session.refresh(job)
        assert job.status == JobStatus.COMPLETED.value
        assert job.processed_items == 5
        assert job.cursor is None
        second_params = mock_client.export_messages.call_args_list[1].args[1]
        assert second_params["cursor"] == "c1"
        assert second_params["limit"] == 3
        assert [r["id"] for r in read_jsonl(job.output_location)] == ["m1", "m2", "m3", "m4", "m5"]

    def test_batch_reads_several_pages(self, worker, mock_client, dispatcher, db_session, app_config):
        """Test a batch larger than the page size keeps paging until full."""
        app_config.export.message_page_size = 2
        job = ExportJobFactory(batch_size=3)
        mock_client.export_messages.side_effect = [
            {"messages": messages("m1", "m2"), "nextCursor": "c1"},
            {"messages": messages("m3"), "nextCursor": "c2"},
        ]

        assert worker.process(message_for(job)) == BatchOutcome.ADVANCED

        limits = [c.args[1]["limit"] for c in mock_client.export_messages.call_args_list]
        assert limits == [2, 1]
        db_session.refresh(job)
        assert job.cursor == "c2"

    def test_empty_page_ends_export(self, worker, job, mock_client, db_session):
        """Test an empty page finishes the export even if a cursor came back."""
        mock_client.export_messages.return_value = {"messages": [], "nextCursor": "c-dangling"}

        assert worker.process(message_for(job)) == BatchOutcome.COMPLETED

        db_session.refresh(job)
        assert job.status == JobStatus.COMPLETED.value
        assert job.cursor is None

    def test_batch_runs_inside_tenant_scope(self, worker, job, mock_client):
        seen = []

        def export_messages(token, params):
            seen.append(TenantContext.get_current_location_id())
            return {"messages": [], "nextCursor": None}

        mock_client.export_messages.side_effect = export_messages

        worker.process(message_for(job))

        assert seen == ["loc-1"]
        assert TenantContext.get_current_location_id() is None

    def test_finalizes_without_fetching_when_cursor_exhausted(
        self, worker, sink, mock_client, db_session
    ):
        """Test a job whose last batch was recorded only needs assembly."""
        job = ExportJobFactory(current_batch=1, cursor=None, processed_items=2)
        sink.write_part(job.id, 1, messages("m1", "m2"), ExportFormat.JSON, MessageExportSource.columns)

        assert worker.process(message_for(job)) == BatchOutcome.COMPLETED

        mock_client.export_messages.assert_not_called()
        db_session.refresh(job)
        assert len(read_jsonl(job.output_location)) == 2


class TestDuplicatesAndRaces:
    """Test at-least-once delivery handling."""

    def test_unknown_job_is_skipped(self, worker, mock_client):
        message = DispatchMessage(export_job_id="missing", attempt=0, batch=0)

        assert worker.process(message) == BatchOutcome.SKIPPED

    @pytest.mark.parametrize("attempt,batch", [(1, 0), (0, 1)])
    def test_stale_message_is_skipped(self, worker, job, mock_client, attempt, batch):
        assert worker.process(message_for(job, attempt=attempt, batch=batch)) == BatchOutcome.SKIPPED
        mock_client.export_messages.assert_not_called()

    def test_paused_job_is_skipped(self, worker, mock_client):
        job = ExportJobFactory(status=JobStatus.PAUSED.value)

        assert worker.process(message_for(job)) == BatchOutcome.SKIPPED
        mock_client.export_messages.assert_not_called()

    def test_pause_during_fetch_discards_batch(
        self, worker, job, job_service, mock_client, dispatcher, db_session
    ):
        """Test a pause that lands mid-batch wins and no progress is recorded."""

        def export_messages(token, params):
            job_service.pause_job(job.id)
            return {"messages": messages("m1", "m2", "m3"), "nextCursor": "c1"}

        mock_client.export_messages.side_effect = export_messages

        assert worker.process(message_for(job)) == BatchOutcome.SKIPPED

        db_session.refresh(job)
        assert job.status == JobStatus.PAUSED.value
        assert job.processed_items == 0
        assert job.current_batch == 0
        dispatcher.dispatch.assert_not_called()

    def test_resume_continues_from_persisted_cursor(
        self, worker, job_service, sink, mock_client, dispatcher, db_session
    ):
        """Test a resumed job reads from its cursor and the output has no duplicates."""
        job = ExportJobFactory(
            status=JobStatus.PAUSED.value,
            batch_size=3,
            total_items=5,
            current_batch=1,
            cursor="c1",
            processed_items=3,
        )
        sink.write_part(
            job.id, 1, messages("m1", "m2", "m3"), ExportFormat.JSON, MessageExportSource.columns
        )
        mock_client.export_messages.return_value = {
            "messages": messages("m4", "m5"),
            "nextCursor": None,
        }

        job_service.resume_job(job.id)
        message = dispatcher.dispatch.call_args.args[0]

        assert worker.process(message) == BatchOutcome.COMPLETED

        assert mock_client.export_messages.call_args.args[1]["cursor"] == "c1"
        db_session.refresh(job)
        ids = [r["id"] for r in read_jsonl(job.output_location)]
        assert ids == ["m1", "m2", "m3", "m4", "m5"]
        assert job.processed_items == 5


class TestFailures:
    """Test failure classification."""

    def test_upstream_failure_retries(self, worker, job, mock_client, dispatcher, db_session):
        mock_client.export_messages.side_effect = UpstreamRequestError("down", http_status=503)

        assert worker.process(message_for(job)) == BatchOutcome.RETRYING

        db_session.refresh(job)
        assert job.retry_count == 1
        assert job.status == JobStatus.PROCESSING.value
        dispatcher.dispatch.assert_called_once_with(message_for(job, attempt=1))

    def test_upstream_failure_after_last_retry_fails(self, worker, mock_client, db_session):
        job = ExportJobFactory(retry_count=3, max_retries=3)
        mock_client.export_messages.side_effect = UpstreamRequestError("down", http_status=503)

        assert worker.process(message_for(job, attempt=3)) == BatchOutcome.FAILED

        db_session.refresh(job)
        assert job.status == JobStatus.FAILED.value

    def test_missing_credential_fails_without_retry(
        self, worker, sink, mock_client, dispatcher, db_session
    ):
        """Test credential errors are terminal and written parts are discarded."""
        job = ExportJobFactory(location_id="loc-without-credential")
        sink.write_part(job.id, 1, messages("m1"), ExportFormat.JSON, MessageExportSource.columns)

        assert worker.process(message_for(job)) == BatchOutcome.FAILED

        db_session.refresh(job)
        assert job.status == JobStatus.FAILED.value
        assert job.retry_count == 0
        dispatcher.dispatch.assert_not_called()
        assert not (sink.base_dir / job.id).exists()

    def test_missing_part_on_finalize_retries(self, worker, db_session):
        job = ExportJobFactory(current_batch=2, cursor=None)

        assert worker.process(message_for(job)) == BatchOutcome.RETRYING

        db_session.refresh(job)
        assert job.retry_count == 1
