"""
CRM Export Azure Functions App

Entry points for the export job orchestrator and the credential lifecycle:

1. ExportBatch (Queue) → runs one batch of an export job per dispatch message
2. StaleJobSweep (Timer, every 5 minutes) → re-dispatches or fails stalled jobs
   and purges expired credential archives
3. InstallWebhook (HTTP) → marketplace install/uninstall events

Run with: func start (after starting Azurite)
"""

import azure.functions as func
from dotenv import load_dotenv

from crm_export_core.constants import QueueName
from crm_export_core.db.db_config import initialize_db
from crm_export_core.functions.handlers import (
    handle_export_message,
    handle_install_webhook,
    handle_stale_job_sweep,
)
from crm_export_core.utils.json_utils import dumps
from crm_export_core.utils.logger import configure_logging

load_dotenv()

app = func.FunctionApp()

logger = configure_logging("crm_export")

# Tables are created if missing; schema changes go through alembic
initialize_db()


@app.function_name(name="ExportBatch")
@app.queue_trigger(
    arg_name="msg", queue_name=QueueName.EXPORT_JOBS.value, connection="AzureWebJobsStorage"
)
def export_batch(msg: func.QueueMessage) -> None:
    """
    Queue triggered function for export batches.

    An exception here makes the host redeliver the message; after the host's
    dequeue limit it lands in the poison queue.
    """
    handle_export_message(msg.get_body())


@app.function_name(name="StaleJobSweep")
@app.timer_trigger(arg_name="timer", schedule="0 */5 * * * *", run_on_startup=False)
def stale_job_sweep(timer: func.TimerRequest) -> None:
    if timer.past_due:
        logger.warning("Stale job sweep is running late")
    summary = handle_stale_job_sweep()
    logger.info("Stale job sweep summary", extra=summary)


@app.function_name(name="InstallWebhook")
@app.route(route="webhooks/install", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def install_webhook(req: func.HttpRequest) -> func.HttpResponse:
    """
    HTTP triggered function for marketplace install/uninstall webhooks.

    Example request:
    POST /api/webhooks/install
    {"type": "UNINSTALL", "appId": "...", "companyId": "...", "locationId": "..."}
    """
    try:
        payload = req.get_json()
    except ValueError:
        payload = None

    status_code, body = handle_install_webhook(payload)
    return func.HttpResponse(
        dumps(body), status_code=status_code, mimetype="application/json"
    )
