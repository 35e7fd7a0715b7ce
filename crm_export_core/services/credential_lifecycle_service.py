"""
Credential lifecycle: resolution, renewal, derivation and authorization.

Resolution for a location prefers the location's own credential. When only the
parent company credential exists, a location credential is derived from it
once and persisted, so later resolutions reuse it. Credentials inside the
renewal lookahead window are renewed before their token is handed out.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..clients.crm_client import CRMClient
from ..config import get_config
from ..constants import CredentialClass
from ..context.tenant_context import tenant_context
from ..db.db_base import as_utc, utc_now
from ..db.db_credential_models import Credential
from ..exceptions import (
    NoCredentialError,
    UpstreamAuthExpiredError,
    UpstreamRequestError,
    UpstreamUnauthorizedError,
)
from ..schemas.credential_schemas import LocationInfo
from ..utils.logger import get_logger
from .credential_store import CredentialStore


class CredentialLifecycleService:
    """Hands out valid access tokens for tenant scopes."""

    def __init__(
        self,
        session: Session,
        client: Optional[CRMClient] = None,
        store: Optional[CredentialStore] = None,
    ):
        self.session = session
        self.client = client or CRMClient()
        self.store = store or CredentialStore(session)
        self.lookahead = timedelta(seconds=get_config().security.renewal_lookahead_seconds)
        self.logger = get_logger()

    def needs_renewal(self, credential: Credential, now: Optional[datetime] = None) -> bool:
        """True when the credential expires within the lookahead window."""
        now = now or utc_now()
        return as_utc(credential.expires_at) <= now + self.lookahead

    def resolve(self, location_id: str) -> str:
        """
        Return a valid access token for calls scoped to a location.

        Args:
            location_id: Location the call is made for

        Returns:
            Access token

        Raises:
            NoCredentialError: Neither the location nor its company authorized the app
            UpstreamAuthExpiredError: A required renewal or derivation was rejected
        """
        with tenant_context(location_id):
            credential = self.store.find_active(CredentialClass.LOCATION, location_id)

            if credential is None:
                company_id = self.store.company_for_location(location_id)
                company_credential = (
                    self.store.find_active(CredentialClass.COMPANY, company_id)
                    if company_id
                    else None
                )
                if company_credential is None:
                    raise NoCredentialError(
                        "No active credential for location; the app must be installed",
                        location_id=location_id,
                        company_id=company_id,
                    )
                company_credential = self._ensure_fresh(company_credential)
                credential = self._derive(company_credential, company_id, location_id)

            credential = self._ensure_fresh(credential)
            return self.store.access_token(credential)

    def resolve_company(self, company_id: str) -> str:
        """Return a valid access token for company-scoped calls."""
        with tenant_context(None, company_id):
            credential = self.store.find_active(CredentialClass.COMPANY, company_id)
            if credential is None:
                raise NoCredentialError(
                    "No active company credential; the app must be installed",
                    company_id=company_id,
                )
            credential = self._ensure_fresh(credential)
            return self.store.access_token(credential)

    def force_renew(self, location_id: str) -> str:
        """Renew the location's credential unconditionally and return the new token."""
        with tenant_context(location_id):
            credential = self.store.find_active(CredentialClass.LOCATION, location_id)
            if credential is None:
                raise NoCredentialError(
                    "No active location credential to renew", location_id=location_id
                )
            return self.store.access_token(self._renew(credential))

    def force_renew_company(self, company_id: str) -> str:
        with tenant_context(None, company_id):
            credential = self.store.find_active(CredentialClass.COMPANY, company_id)
            if credential is None:
                raise NoCredentialError(
                    "No active company credential to renew", company_id=company_id
                )
            return self.store.access_token(self._renew(credential))

    def authorize(self, code: str, installation_id: Optional[str] = None) -> Credential:
        """
        Exchange an authorization code and store the resulting credential.

        Company-wide grants also register every location the company owns so
        later location resolutions can find their parent credential.
        """
        grant = self.client.exchange_code(code)

        if grant.credential_class == CredentialClass.LOCATION:
            credential = self.store.upsert(
                CredentialClass.LOCATION,
                grant,
                company_id=grant.company_id,
                location_id=grant.location_id,
                installation_id=installation_id,
            )
            if grant.company_id:
                self.store.register_location(
                    LocationInfo(location_id=grant.location_id), grant.company_id
                )
            return credential

        credential = self.store.upsert(
            CredentialClass.COMPANY,
            grant,
            company_id=grant.company_id,
            installation_id=installation_id,
        )
        try:
            self.sync_company_locations(grant.company_id)
        except UpstreamRequestError:
            # The grant is stored; locations can be synced again later
            self.logger.warning(
                "Could not list company locations after authorization",
                extra={"company_id": grant.company_id},
            )
        return credential

    def sync_company_locations(self, company_id: str) -> int:
        """Register every location the company owns; returns how many were seen."""
        access_token = self.resolve_company(company_id)
        locations = self.client.list_company_locations(access_token, company_id)
        for location in locations:
            self.store.register_location(location, company_id)
        self.logger.info(
            "Company locations synced", extra={"company_id": company_id, "count": len(locations)}
        )
        return len(locations)

    def _ensure_fresh(self, credential: Credential) -> Credential:
        if self.needs_renewal(credential):
            return self._renew(credential)
        return credential

    def _renew(self, credential: Credential) -> Credential:
        refresh_token = self.store.refresh_token(credential)
        if not refresh_token:
            self.store.mark_inactive(credential)
            raise UpstreamAuthExpiredError(
                "Credential has no refresh token; re-authorization required",
                credential_id=credential.id,
                scope_key=credential.scope_key,
            )

        try:
            grant = self.client.refresh(refresh_token)
        except UpstreamRequestError as e:
            if e.http_status is None or e.http_status >= 500:
                # Transport failure or upstream outage, the grant itself may still be valid
                raise
            self.store.mark_inactive(credential)
            raise UpstreamAuthExpiredError(
                "Credential renewal was rejected; re-authorization required",
                cause=e,
                credential_id=credential.id,
                scope_key=credential.scope_key,
            ) from e

        previous_expiry = credential.expires_at
        self.store.apply_renewal(credential, grant)
        self.logger.info(
            "Credential renewed",
            extra={
                "credential_id": credential.id,
                "credential_class": credential.credential_class,
                "previous_expiry": previous_expiry,
                "expires_at": credential.expires_at,
            },
        )
        return credential

    def _derive(
        self, company_credential: Credential, company_id: str, location_id: str
    ) -> Credential:
        try:
            grant = self.client.derive_location_token(
                self.store.access_token(company_credential), company_id, location_id
            )
        except UpstreamUnauthorizedError as e:
            self.store.mark_inactive(company_credential)
            raise UpstreamAuthExpiredError(
                "Company credential was rejected while deriving a location credential",
                cause=e,
                company_id=company_id,
                location_id=location_id,
            ) from e

        credential = self.store.upsert(
            CredentialClass.LOCATION,
            grant,
            company_id=company_id,
            location_id=location_id,
            installation_id=company_credential.installation_id,
        )
        self.logger.info(
            "Derived location credential from company credential",
            extra={"company_id": company_id, "location_id": location_id},
        )
        return credential
