"""
Batch worker dispatch.

Dispatch publishes a DispatchMessage and returns; the worker re-reads all job
state from the database. Delivery is at-least-once, the worker dedupes.
"""

from abc import ABC, abstractmethod
from typing import Optional

from azure.core.exceptions import AzureError
from azure.storage.queue import QueueClient

from ..config import get_config
from ..exceptions import DispatchFailedError
from ..schemas.export_job_schemas import DispatchMessage
from ..utils.logger import get_logger
from ..utils.queue_utils import send_message_to_queue_direct


class JobDispatcher(ABC):
    """Schedules the next batch of an export job."""

    @abstractmethod
    def dispatch(self, message: DispatchMessage) -> None:
        """
        Publish a dispatch message.

        Raises:
            DispatchFailedError: If the message could not be published
        """


class QueueJobDispatcher(JobDispatcher):
    """Publishes dispatch messages to an Azure Storage queue."""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        queue_name: Optional[str] = None,
        queue_client: Optional[QueueClient] = None,
    ):
        queue_config = get_config().queue
        self.connection_string = connection_string or queue_config.connection_string
        self.queue_name = queue_name or queue_config.export_queue_name
        self.queue_client = queue_client
        self.logger = get_logger()

    def dispatch(self, message: DispatchMessage) -> None:
        try:
            send_message_to_queue_direct(
                self.connection_string,
                self.queue_name,
                message.model_dump(by_alias=True),
                queue_client=self.queue_client,
            )
        except (AzureError, ValueError) as e:
            raise DispatchFailedError(
                f"Failed to dispatch export job: {e}",
                cause=e,
                export_job_id=message.export_job_id,
                queue_name=self.queue_name,
            ) from e

        self.logger.info(
            "Export job dispatched",
            extra={
                "export_job_id": message.export_job_id,
                "attempt": message.attempt,
                "batch": message.batch,
            },
        )
