"""
Persistence for delegated credentials and the tenant hierarchy.

The store enforces one credential row per (scope, class) pair. Renewals
overwrite secrets and expiry on that row; revocation copies every affected
row into the archive before deleting it.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_config
from ..constants import CredentialClass, DeletionReason
from ..db.db_base import utc_now
from ..db.db_credential_models import ArchivedCredential, Credential
from ..db.db_tenant_models import TenantLocation
from ..exceptions import ErrorCode, RepositoryError
from ..schemas.credential_schemas import LocationInfo, TokenGrant
from ..utils.encryption_utils import decrypt_token, encrypt_token
from ..utils.logger import get_logger

ACCESS = "access"
REFRESH = "refresh"


def scope_key_for(
    credential_class: CredentialClass, company_id: Optional[str], location_id: Optional[str]
) -> str:
    key = location_id if credential_class == CredentialClass.LOCATION else company_id
    if not key:
        raise RepositoryError(
            f"{credential_class.value} credential requires a scope identifier",
            error_code=ErrorCode.MISSING_REQUIRED,
            status_code=400,
            company_id=company_id,
            location_id=location_id,
        )
    return key


class CredentialStore:
    """SQLAlchemy-backed credential and tenant location repository."""

    def __init__(self, session: Session):
        self.session = session
        self.logger = get_logger()

    # Lookup

    def find(self, credential_class: CredentialClass, scope_key: str) -> Optional[Credential]:
        return (
            self.session.query(Credential)
            .filter(
                Credential.credential_class == credential_class.value,
                Credential.scope_key == scope_key,
            )
            .first()
        )

    def find_active(
        self, credential_class: CredentialClass, scope_key: str
    ) -> Optional[Credential]:
        credential = self.find(credential_class, scope_key)
        if credential is None or not credential.is_active:
            return None
        return credential

    def company_for_location(self, location_id: str) -> Optional[str]:
        """Owning company of an installed location; None once the location is uninstalled."""
        row = (
            self.session.query(TenantLocation)
            .filter(
                TenantLocation.location_id == location_id,
                TenantLocation.is_installed.is_(True),
            )
            .first()
        )
        return row.company_id if row else None

    def access_token(self, credential: Credential) -> str:
        return decrypt_token(self.session, credential.access_token, credential.scope_key, ACCESS)

    def refresh_token(self, credential: Credential) -> Optional[str]:
        return decrypt_token(self.session, credential.refresh_token, credential.scope_key, REFRESH)

    # Writes

    def _write_secrets(self, credential: Credential, grant: TokenGrant) -> None:
        credential.access_token = encrypt_token(
            self.session, grant.access_token, credential.scope_key, ACCESS
        )
        if grant.refresh_token:
            credential.refresh_token = encrypt_token(
                self.session, grant.refresh_token, credential.scope_key, REFRESH
            )
        credential.expires_at = grant.expires_at()
        if grant.user_type:
            credential.user_type = grant.user_type
        if grant.scope:
            credential.scopes = grant.scope

    def _overwrite(
        self,
        credential: Credential,
        grant: TokenGrant,
        company_id: Optional[str],
        installation_id: Optional[str],
    ) -> None:
        self._write_secrets(credential, grant)
        credential.is_active = True
        if company_id and not credential.company_id:
            credential.company_id = company_id
        if installation_id:
            credential.installation_id = installation_id

    def upsert(
        self,
        credential_class: CredentialClass,
        grant: TokenGrant,
        company_id: Optional[str],
        location_id: Optional[str] = None,
        installation_id: Optional[str] = None,
    ) -> Credential:
        """
        Insert or overwrite the credential for (scope, class) and mark it active.

        Concurrent callers racing to insert the same scope converge on a single
        row: the loser's insert hits the unique constraint inside a savepoint
        and falls back to updating the winner's row.

        Args:
            credential_class: Company-wide or location-specific
            grant: Token grant to store
            company_id: Owning company
            location_id: Location for location-class credentials
            installation_id: Installation record the grant came from

        Returns:
            The persisted credential

        Raises:
            RepositoryError: If the write fails
        """
        scope_key = scope_key_for(credential_class, company_id, location_id)

        credential = self.find(credential_class, scope_key)
        if credential is None:
            credential = Credential(
                credential_class=credential_class.value,
                scope_key=scope_key,
                company_id=company_id,
                location_id=location_id if credential_class == CredentialClass.LOCATION else None,
                installation_id=installation_id,
                is_active=True,
            )
            self._write_secrets(credential, grant)
            try:
                with self.session.begin_nested():
                    self.session.add(credential)
            except IntegrityError:
                self.logger.info(
                    "Credential inserted concurrently, updating existing row",
                    extra={"credential_class": credential_class.value, "scope_key": scope_key},
                )
                credential = self.find(credential_class, scope_key)
                if credential is None:
                    raise
                self._overwrite(credential, grant, company_id, installation_id)
        else:
            self._overwrite(credential, grant, company_id, installation_id)

        self._commit("upsert", scope_key=scope_key)
        self.logger.info(
            "Credential stored",
            extra={
                "credential_id": credential.id,
                "credential_class": credential_class.value,
                "scope_key": scope_key,
            },
        )
        return credential

    def apply_renewal(self, credential: Credential, grant: TokenGrant) -> Credential:
        """Replace secrets and expiry in place; the tenant scope never changes."""
        self._write_secrets(credential, grant)
        credential.is_active = True
        self._commit("apply_renewal", credential_id=credential.id)
        return credential

    def mark_inactive(self, credential: Credential) -> None:
        credential.is_active = False
        self._commit("mark_inactive", credential_id=credential.id)
        self.logger.warning(
            "Credential marked inactive",
            extra={"credential_id": credential.id, "scope_key": credential.scope_key},
        )

    def register_location(self, location: LocationInfo, company_id: str) -> TenantLocation:
        """Create or refresh the location -> company mapping."""
        row = (
            self.session.query(TenantLocation)
            .filter(TenantLocation.location_id == location.location_id)
            .first()
        )
        if row is None:
            row = TenantLocation(location_id=location.location_id, company_id=company_id)
            self.session.add(row)
        row.company_id = company_id
        row.name = location.name or row.name
        row.email = location.email or row.email
        row.phone = location.phone or row.phone
        row.timezone = location.timezone or row.timezone
        row.is_installed = True
        self._commit("register_location", location_id=location.location_id)
        return row

    # Revocation

    def archive_and_delete(
        self,
        company_id: Optional[str],
        location_id: Optional[str],
        reason: DeletionReason = DeletionReason.APP_UNINSTALL,
        installation_id: Optional[str] = None,
        webhook_data: Optional[dict] = None,
    ) -> int:
        """
        Archive every credential of a scope, then delete the originals.

        A location scope covers that location's credentials; a company scope
        covers the company credential and all location credentials under it.
        Archive rows are flushed before any delete is issued, and both happen
        in one commit.

        Returns:
            Number of credentials archived and deleted
        """
        if location_id:
            condition = Credential.location_id == location_id
        elif company_id:
            condition = or_(
                Credential.company_id == company_id,
                Credential.scope_key == company_id,
            )
        else:
            raise RepositoryError(
                "Revocation requires a company_id or location_id",
                error_code=ErrorCode.MISSING_REQUIRED,
                status_code=400,
            )

        credentials: List[Credential] = self.session.query(Credential).filter(condition).all()
        if not credentials:
            self.logger.info(
                "No credentials to archive",
                extra={"company_id": company_id, "location_id": location_id},
            )
            return 0

        now = utc_now()
        retention = timedelta(days=get_config().security.archive_retention_days)
        try:
            for credential in credentials:
                self.session.add(
                    ArchivedCredential(
                        original_credential_id=credential.id,
                        company_id=credential.company_id,
                        location_id=credential.location_id,
                        credential_class=credential.credential_class,
                        access_token=credential.access_token,
                        refresh_token=credential.refresh_token,
                        original_created_at=credential.created_at,
                        original_expires_at=credential.expires_at,
                        archived_at=now,
                        deletion_reason=reason.value,
                        installation_id=installation_id,
                        webhook_data=webhook_data,
                        auto_delete_at=now + retention,
                    )
                )
            self.session.flush()

            for credential in credentials:
                self.session.delete(credential)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                "Failed to archive credentials",
                cause=e,
                company_id=company_id,
                location_id=location_id,
            )

        self.logger.info(
            "Credentials archived and deleted",
            extra={
                "count": len(credentials),
                "company_id": company_id,
                "location_id": location_id,
                "reason": reason.value,
            },
        )
        return len(credentials)

    def purge_expired_archives(self, now: Optional[datetime] = None) -> int:
        """Physically remove archived credentials past their retention."""
        now = now or utc_now()
        try:
            deleted = (
                self.session.query(ArchivedCredential)
                .filter(ArchivedCredential.auto_delete_at <= now)
                .delete(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError("Failed to purge archived credentials", cause=e)

        if deleted:
            self.logger.info("Purged expired credential archives", extra={"count": deleted})
        return deleted

    def _commit(self, operation: str, **context) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError(
                f"Credential store {operation} failed", cause=e, operation=operation, **context
            )
