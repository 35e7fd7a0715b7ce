"""
Azure Storage Queue utilities.

Sends JSON messages directly with the storage SDK.
"""

import json
from typing import Any, Dict, Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.queue import QueueClient
from pydantic_core import to_jsonable_python

from .logger import get_logger


def send_message_to_queue_direct(
    connection_string: str,
    queue_name: str,
    message_data: Dict[str, Any],
    queue_client: Optional[QueueClient] = None,
) -> None:
    """
    Send a message directly to Azure Storage Queue using SDK.

    Creates the queue and retries once when it does not exist yet.

    Args:
        connection_string: Azure Storage connection string
        queue_name: Name of the target queue
        message_data: Message data to send (will be JSON serialized)
        queue_client: Pre-built client, mainly for tests
    """
    logger = get_logger()

    json_data = json.dumps(to_jsonable_python(message_data))

    if queue_client is None:
        queue_client = QueueClient.from_connection_string(
            conn_str=connection_string, queue_name=queue_name
        )

    try:
        logger.debug(f"Sending message to queue: {queue_name}")
        queue_client.send_message(json_data)
    except ResourceNotFoundError:
        logger.info(f"Queue {queue_name} not found, creating it")
        queue_client.create_queue()
        queue_client.send_message(json_data)
