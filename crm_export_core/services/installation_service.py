"""
Marketplace install/uninstall handling.

Installs are recorded for audit. Uninstalls revoke every credential of the
scope through the credential store, which archives before it deletes.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..constants import DeletionReason, InstallationStatus, WebhookEventType
from ..db.db_base import utc_now
from ..db.db_tenant_models import Installation, TenantLocation
from ..exceptions import ErrorCode, RepositoryError, ValidationError
from ..schemas.credential_schemas import LocationInfo
from ..schemas.installation_schemas import InstallWebhook
from ..utils.logger import get_logger
from .credential_store import CredentialStore


class InstallationService:
    """Applies install/uninstall webhooks to installations and credentials."""

    def __init__(self, session: Session, store: Optional[CredentialStore] = None):
        self.session = session
        self.store = store or CredentialStore(session)
        self.logger = get_logger()

    def handle_webhook(self, payload: Dict[str, Any]) -> Installation:
        """
        Route a webhook payload to install or uninstall handling.

        Raises:
            ValidationError: If the payload has no usable type or appId
        """
        try:
            event = InstallWebhook.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid install webhook: {e.errors()[0]['msg']}",
                field="payload",
                error_code=ErrorCode.INVALID_FORMAT,
                cause=e,
                type=payload.get("type") if isinstance(payload, dict) else None,
            )

        self.logger.info(
            "Install webhook received",
            extra={
                "type": event.type.value,
                "app_id": event.app_id,
                "company_id": event.company_id,
                "location_id": event.location_id,
            },
        )
        if event.type == WebhookEventType.INSTALL:
            return self.install(event, payload)
        return self.uninstall(event, payload)

    def _find_active(self, event: InstallWebhook) -> Optional[Installation]:
        query = self.session.query(Installation).filter(
            Installation.app_id == event.app_id,
            Installation.status == InstallationStatus.ACTIVE.value,
        )
        if event.location_id:
            query = query.filter(Installation.location_id == event.location_id)
        else:
            query = query.filter(Installation.company_id == event.company_id)
        return query.order_by(Installation.created_at.desc()).first()

    def install(self, event: InstallWebhook, payload: Dict[str, Any]) -> Installation:
        installation = self._find_active(event)
        if installation is None:
            installation = Installation(
                app_id=event.app_id,
                company_id=event.company_id,
                location_id=event.location_id,
                status=InstallationStatus.ACTIVE.value,
            )
            self.session.add(installation)

        installation.user_id = event.user_id or installation.user_id
        installation.plan_id = event.plan_id or installation.plan_id
        installation.trial = event.trial or installation.trial
        installation.company_name = event.company_name or installation.company_name
        installation.installed_at = utc_now()
        installation.raw_webhook_data = payload
        self._commit("install", app_id=event.app_id)

        if event.company_id and event.location_id:
            self.store.register_location(LocationInfo(location_id=event.location_id), event.company_id)

        self.logger.info(
            "Installation recorded",
            extra={
                "installation_id": installation.id,
                "company_id": event.company_id,
                "location_id": event.location_id,
            },
        )
        return installation

    def uninstall(self, event: InstallWebhook, payload: Dict[str, Any]) -> Installation:
        """
        Mark the installation uninstalled and revoke the scope's credentials.

        Credentials are revoked even when no active installation is on record;
        an uninstalled record is created in that case.
        """
        installation = self._find_active(event)
        now = utc_now()
        if installation is None:
            self.logger.warning(
                "No active installation found for uninstall",
                extra={"company_id": event.company_id, "location_id": event.location_id},
            )
            installation = Installation(
                app_id=event.app_id,
                company_id=event.company_id,
                location_id=event.location_id,
                status=InstallationStatus.UNINSTALLED.value,
                installed_at=None,
                uninstalled_at=now,
                raw_webhook_data=payload,
            )
            self.session.add(installation)
        else:
            installation.status = InstallationStatus.UNINSTALLED.value
            installation.uninstalled_at = now
            installation.raw_webhook_data = {
                **(installation.raw_webhook_data or {}),
                "uninstallData": payload,
            }
        self._commit("uninstall", app_id=event.app_id)

        self.revoke(
            event.company_id,
            event.location_id,
            DeletionReason.APP_UNINSTALL,
            installation_id=installation.id,
            webhook_data=payload,
        )
        return installation

    def revoke(
        self,
        company_id: Optional[str],
        location_id: Optional[str],
        reason: DeletionReason,
        installation_id: Optional[str] = None,
        webhook_data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Archive and delete a scope's credentials and mark its locations uninstalled."""
        count = self.store.archive_and_delete(
            company_id,
            location_id,
            reason=reason,
            installation_id=installation_id,
            webhook_data=webhook_data,
        )

        query = self.session.query(TenantLocation)
        if location_id:
            query = query.filter(TenantLocation.location_id == location_id)
        else:
            query = query.filter(TenantLocation.company_id == company_id)
        try:
            query.update({"is_installed": False}, synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                "Failed to mark locations uninstalled",
                cause=e,
                company_id=company_id,
                location_id=location_id,
            )
        return count

    def purge_expired_archives(self, now: Optional[datetime] = None) -> int:
        return self.store.purge_expired_archives(now)

    def _commit(self, operation: str, **context) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                f"Installation {operation} failed", cause=e, operation=operation, **context
            )
