"""
Unit test conftest.py - Component-specific fixtures.

Services get the test session; the CRM HTTP client and the dispatcher are
mocks so no network or queue is touched.
"""

from unittest.mock import Mock

import pytest

from crm_export_core.clients.crm_client import CRMClient
from crm_export_core.processing.dispatcher import JobDispatcher
from crm_export_core.processing.export_sinks import LocalFileExportSink
from crm_export_core.processing.export_worker import ExportBatchWorker
from crm_export_core.services.call_executor import AuthenticatedCallExecutor
from crm_export_core.services.credential_lifecycle_service import CredentialLifecycleService
from crm_export_core.services.credential_store import CredentialStore
from crm_export_core.services.export_job_service import ExportJobService
from crm_export_core.services.installation_service import InstallationService
from crm_export_core.services.notification_service import CompletionNotifier
from crm_export_core.services.pricing_service import PriceCache, PricingEngine
from tests.fixtures.factories import configure_factories


@pytest.fixture(autouse=True)
def factories(db_session):
    """Bind every factory to the test session."""
    configure_factories(db_session)


# ==================== COLLABORATOR MOCKS ====================


@pytest.fixture
def mock_client():
    """CRM client mock; tests set return values per endpoint."""
    client = Mock(spec=CRMClient)
    client.has_funds.return_value = True
    client.get_rebilling_config.return_value = [
        {"meterId": "conversations", "centsPrice": 0.05},
        {"meterId": "smsWhatsapp", "centsPrice": 0.05},
        {"meterId": "email", "centsPrice": 0.3},
    ]
    return client


@pytest.fixture
def dispatcher():
    return Mock(spec=JobDispatcher)


@pytest.fixture
def notifier():
    return Mock(spec=CompletionNotifier)


# ==================== SERVICE FIXTURES ====================


@pytest.fixture
def credential_store(db_session):
    return CredentialStore(db_session)


@pytest.fixture
def lifecycle(db_session, mock_client, credential_store):
    return CredentialLifecycleService(db_session, client=mock_client, store=credential_store)


@pytest.fixture
def executor(lifecycle):
    return AuthenticatedCallExecutor(lifecycle)


@pytest.fixture
def pricing(executor, mock_client):
    return PricingEngine(executor, client=mock_client, price_cache=PriceCache(3600))


@pytest.fixture
def job_service(db_session, executor, pricing, dispatcher, mock_client, sink, notifier):
    return ExportJobService(
        db_session, executor, pricing, dispatcher, client=mock_client, sink=sink, notifier=notifier
    )


@pytest.fixture
def sink(tmp_path):
    return LocalFileExportSink(str(tmp_path / "exports"))


@pytest.fixture
def worker(job_service, sink):
    return ExportBatchWorker(job_service, sink)


@pytest.fixture
def installation_service(db_session, credential_store):
    return InstallationService(db_session, store=credential_store)
