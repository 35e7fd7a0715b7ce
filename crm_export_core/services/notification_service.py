"""
Completion notifications for finished export jobs.
"""

from abc import ABC, abstractmethod
from html import escape
from typing import Optional

import requests

from ..config import NotificationConfig, get_config
from ..constants import ExportType
from ..db.db_export_job_models import ExportJob
from ..exceptions import ExternalServiceError
from ..utils.logger import get_logger


class CompletionNotifier(ABC):
    """Tells the requester that an export is ready."""

    @abstractmethod
    def notify(self, job: ExportJob, download_url: str) -> bool:
        """
        Send the notification for a completed job.

        Returns:
            False when the notifier is not configured and nothing was sent

        Raises:
            ExternalServiceError: If the provider rejected the message
        """


class BrevoEmailNotifier(CompletionNotifier):
    """Sends the download link through the Brevo transactional email API."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        http: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.config = config or get_config().notification
        self.http = http or requests.Session()
        self.timeout = timeout or get_config().upstream.timeout_seconds
        self.logger = get_logger()

    def notify(self, job: ExportJob, download_url: str) -> bool:
        if not job.notification_email:
            return False
        if not self.config.api_key:
            self.logger.info(
                "Email API key not configured, skipping completion email",
                extra={"export_job_id": job.id},
            )
            return False

        label = "Conversations" if job.export_type == ExportType.CONVERSATIONS.value else "Messages"
        payload = {
            "sender": {"name": self.config.from_name, "email": self.config.from_address},
            "to": [{"email": job.notification_email}],
            "subject": f"Your {label} Export is Ready",
            "htmlContent": self._html(job, download_url),
        }
        try:
            response = self.http.post(
                self.config.api_url,
                json=payload,
                headers={
                    "accept": "application/json",
                    "api-key": self.config.api_key,
                    "content-type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalServiceError(
                f"Completion email failed: {e}",
                service_name="brevo",
                cause=e,
                export_job_id=job.id,
            ) from e

        self.logger.info("Completion email sent", extra={"export_job_id": job.id})
        return True

    def _html(self, job: ExportJob, download_url: str) -> str:
        days = get_config().export.link_expiry_days
        return (
            "<h2>Your export is ready</h2>"
            f"<p>Your {escape(job.export_type)} export has completed.</p>"
            "<ul>"
            f"<li>Format: {escape(job.format.upper())}</li>"
            f"<li>Total items: {job.processed_items:,}</li>"
            "</ul>"
            f'<p><a href="{escape(download_url, quote=True)}">Download export</a></p>'
            f"<p>This download link expires in {days} days.</p>"
        )
