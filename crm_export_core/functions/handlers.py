"""
Trigger handlers behind the Azure Functions entry points.

Each handler opens its own database session, wires the services it needs and
closes the session when done. function_app.py only adapts Azure trigger types
to these calls, so the handlers can be exercised without the Functions host.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, Optional, Tuple, Union

import pydantic
from sqlalchemy.orm import Session

from ..clients.crm_client import CRMClient
from ..config import get_config
from ..db.db_config import get_db_manager
from ..exceptions import (
    BaseError,
    ErrorCode,
    ValidationError,
    clear_correlation_id,
    set_correlation_id,
)
from ..processing.dispatcher import JobDispatcher, QueueJobDispatcher
from ..processing.export_sinks import ExportSink, build_sink
from ..processing.export_worker import BatchOutcome, ExportBatchWorker
from ..schemas.export_job_schemas import DispatchMessage
from ..services.call_executor import AuthenticatedCallExecutor
from ..services.credential_lifecycle_service import CredentialLifecycleService
from ..services.export_job_service import ExportJobService
from ..services.installation_service import InstallationService
from ..services.notification_service import BrevoEmailNotifier, CompletionNotifier
from ..services.pricing_service import PriceCache, PricingEngine
from ..utils.logger import get_logger

# Unit prices are shared by every invocation in this worker process
_price_cache: Optional[PriceCache] = None


def get_price_cache() -> PriceCache:
    global _price_cache
    if _price_cache is None:
        _price_cache = PriceCache(get_config().billing.price_cache_ttl_seconds)
    return _price_cache


def reset_price_cache() -> None:
    global _price_cache
    _price_cache = None


@contextmanager
def session_scope(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """Yield the given session, or a fresh one that is closed afterward."""
    if session is not None:
        yield session
        return

    db_manager = get_db_manager()
    owned = db_manager.get_session()
    try:
        yield owned
    finally:
        db_manager.close_session(owned)


def build_export_job_service(
    session: Session,
    client: Optional[CRMClient] = None,
    dispatcher: Optional[JobDispatcher] = None,
    sink: Optional[ExportSink] = None,
    notifier: Optional[CompletionNotifier] = None,
) -> ExportJobService:
    lifecycle = CredentialLifecycleService(session, client=client)
    executor = AuthenticatedCallExecutor(lifecycle)
    pricing = PricingEngine(executor, price_cache=get_price_cache())
    return ExportJobService(
        session,
        executor,
        pricing,
        dispatcher or QueueJobDispatcher(),
        sink=sink or build_sink(),
        notifier=notifier or BrevoEmailNotifier(),
    )


def handle_export_message(
    body: Union[str, bytes],
    session: Optional[Session] = None,
    client: Optional[CRMClient] = None,
    dispatcher: Optional[JobDispatcher] = None,
    sink: Optional[ExportSink] = None,
    notifier: Optional[CompletionNotifier] = None,
) -> BatchOutcome:
    """
    Run one export batch for a queue message.

    Raises:
        ValidationError: If the message body is not a dispatch message
    """
    try:
        message = DispatchMessage.model_validate_json(body)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Malformed export dispatch message",
            field="body",
            error_code=ErrorCode.INVALID_FORMAT,
            cause=e,
        )

    set_correlation_id(message.export_job_id)
    try:
        with session_scope(session) as active:
            jobs = build_export_job_service(
                active, client=client, dispatcher=dispatcher, sink=sink, notifier=notifier
            )
            worker = ExportBatchWorker(jobs, jobs.sink)
            outcome = worker.process(message)
    finally:
        clear_correlation_id()

    get_logger().info(
        "Export message handled",
        extra={"export_job_id": message.export_job_id, "outcome": outcome.value},
    )
    return outcome


def handle_stale_job_sweep(
    session: Optional[Session] = None,
    client: Optional[CRMClient] = None,
    dispatcher: Optional[JobDispatcher] = None,
    sink: Optional[ExportSink] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Re-dispatch or fail stalled jobs, then purge expired credential archives."""
    with session_scope(session) as active:
        jobs = build_export_job_service(active, client=client, dispatcher=dispatcher, sink=sink)
        summary = jobs.sweep_stale_jobs(now)
        summary["archives_purged"] = InstallationService(active).purge_expired_archives(now)
    return summary


def handle_install_webhook(
    payload: Any, session: Optional[Session] = None
) -> Tuple[int, Dict[str, Any]]:
    """
    Apply an install/uninstall webhook.

    Returns:
        HTTP status code and JSON body. Domain errors map to their status code;
        anything else propagates to the Functions host.
    """
    set_correlation_id(str(uuid.uuid4()))
    try:
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object", field="body")
        with session_scope(session) as active:
            installation = InstallationService(active).handle_webhook(payload)
            return 200, {
                "success": True,
                "message": f"{payload.get('type')} webhook processed successfully",
                "installation_id": installation.id,
            }
    except BaseError as e:
        return e.status_code, {"success": False, **e.to_dict()}
    finally:
        clear_correlation_id()
