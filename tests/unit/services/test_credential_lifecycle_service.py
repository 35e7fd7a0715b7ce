"""
Tests for CredentialLifecycleService.

Uses the real credential store on SQLite; only the CRM client is mocked.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest
import requests

from crm_export_core.clients.crm_client import CRMClient
from crm_export_core.constants import CredentialClass
from crm_export_core.db import Credential, TenantLocation
from crm_export_core.db.db_base import as_utc, utc_now
from crm_export_core.exceptions import (
    NoCredentialError,
    UpstreamAuthExpiredError,
    UpstreamRequestError,
    UpstreamUnauthorizedError,
)
from crm_export_core.schemas.credential_schemas import LocationInfo, TokenGrant
from crm_export_core.services.credential_lifecycle_service import CredentialLifecycleService
from tests.fixtures.factories import (
    CompanyCredentialFactory,
    LocationCredentialFactory,
    TenantLocationFactory,
)


def grant(access_token="new-access", refresh_token="new-refresh", expires_in=86400, **extra):
    return TokenGrant(
        access_token=access_token, refresh_token=refresh_token, expires_in=expires_in, **extra
    )


class TestResolveLocationCredential:
    """Test resolution of location-scoped tokens."""

    def test_returns_existing_location_token(self, lifecycle, mock_client):
        """Test a fresh location credential is returned without upstream calls."""
        LocationCredentialFactory(location_id="loc-1", access_token="loc-token")

        assert lifecycle.resolve("loc-1") == "loc-token"
        mock_client.refresh.assert_not_called()
        mock_client.derive_location_token.assert_not_called()

    def test_derives_location_credential_once_and_reuses_it(
        self, lifecycle, mock_client, db_session
    ):
        """Test a company-only tenant gets exactly one persisted location credential."""
        TenantLocationFactory(location_id="loc-1", company_id="comp-1")
        CompanyCredentialFactory(company_id="comp-1", access_token="company-access")
        mock_client.derive_location_token.return_value = grant(
            access_token="derived-access", location_id="loc-1", company_id="comp-1"
        )

        first = lifecycle.resolve("loc-1")
        second = lifecycle.resolve("loc-1")

        assert first == second == "derived-access"
        mock_client.derive_location_token.assert_called_once_with(
            "company-access", "comp-1", "loc-1"
        )
        location_rows = (
            db_session.query(Credential)
            .filter(Credential.credential_class == CredentialClass.LOCATION.value)
            .all()
        )
        assert len(location_rows) == 1
        assert location_rows[0].location_id == "loc-1"
        assert location_rows[0].company_id == "comp-1"

    def test_no_credential_anywhere_raises(self, lifecycle):
        """Test a tenant that never installed the app gets NoCredentialError."""
        TenantLocationFactory(location_id="loc-1", company_id="comp-1")

        with pytest.raises(NoCredentialError):
            lifecycle.resolve("loc-1")

    def test_inactive_location_credential_is_ignored(self, lifecycle):
        """Test inactive credentials are never handed out."""
        LocationCredentialFactory(location_id="loc-1", is_active=False)

        with pytest.raises(NoCredentialError):
            lifecycle.resolve("loc-1")

    def test_rejected_derivation_deactivates_company_credential(
        self, lifecycle, mock_client, db_session
    ):
        """Test a 401 while deriving marks the company credential inactive."""
        TenantLocationFactory(location_id="loc-1", company_id="comp-1")
        company = CompanyCredentialFactory(company_id="comp-1")
        mock_client.derive_location_token.side_effect = UpstreamUnauthorizedError()

        with pytest.raises(UpstreamAuthExpiredError):
            lifecycle.resolve("loc-1")

        db_session.refresh(company)
        assert company.is_active is False


class TestRenewal:
    """Test renewal inside the lookahead window."""

    def test_renews_before_returning_and_expiry_increases(
        self, lifecycle, mock_client, db_session
    ):
        """Test a credential about to expire is renewed and its expiry moves forward."""
        credential = LocationCredentialFactory(
            location_id="loc-1",
            refresh_token="old-refresh",
            expires_at=utc_now() + timedelta(seconds=60),
        )
        previous_expiry = as_utc(credential.expires_at)
        mock_client.refresh.return_value = grant(access_token="renewed-access")

        assert lifecycle.resolve("loc-1") == "renewed-access"

        mock_client.refresh.assert_called_once_with("old-refresh")
        db_session.refresh(credential)
        assert as_utc(credential.expires_at) > previous_expiry
        assert credential.scope_key == "loc-1"

    def test_does_not_renew_outside_lookahead(self, lifecycle, mock_client):
        """Test a credential with plenty of lifetime left is not renewed."""
        LocationCredentialFactory(location_id="loc-1", expires_at=utc_now() + timedelta(hours=2))

        lifecycle.resolve("loc-1")

        mock_client.refresh.assert_not_called()

    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_rejected_renewal_deactivates_credential(
        self, lifecycle, mock_client, db_session, status
    ):
        """Test a client-error refresh response requires re-authorization."""
        credential = LocationCredentialFactory(
            location_id="loc-1", expires_at=utc_now() + timedelta(seconds=10)
        )
        mock_client.refresh.side_effect = UpstreamRequestError("rejected", http_status=status)

        with pytest.raises(UpstreamAuthExpiredError):
            lifecycle.resolve("loc-1")

        db_session.refresh(credential)
        assert credential.is_active is False

    @pytest.mark.parametrize("status", [None, 502, 503])
    def test_transient_renewal_failure_keeps_credential_active(
        self, lifecycle, mock_client, db_session, status
    ):
        """Test transport errors and upstream outages stay retryable."""
        credential = LocationCredentialFactory(
            location_id="loc-1", expires_at=utc_now() + timedelta(seconds=10)
        )
        mock_client.refresh.side_effect = UpstreamRequestError("down", http_status=status)

        with pytest.raises(UpstreamRequestError) as exc_info:
            lifecycle.resolve("loc-1")

        assert exc_info.value.retryable is True
        db_session.refresh(credential)
        assert credential.is_active is True

    def test_malformed_refresh_response_keeps_credential_active(
        self, db_session, credential_store
    ):
        """Test an unreadable token response is treated as an upstream fault."""
        http = Mock(spec=requests.Session)
        http.request.return_value = Mock(
            spec=requests.Response, status_code=200, content=b"x", text="{}"
        )
        http.request.return_value.json.return_value = {"token_type": "Bearer"}
        lifecycle = CredentialLifecycleService(
            db_session, client=CRMClient(http=http), store=credential_store
        )
        credential = LocationCredentialFactory(
            location_id="loc-1", expires_at=utc_now() + timedelta(seconds=10)
        )

        with pytest.raises(UpstreamRequestError) as exc_info:
            lifecycle.resolve("loc-1")

        assert exc_info.value.http_status == 502
        db_session.refresh(credential)
        assert credential.is_active is True

    def test_missing_refresh_token_requires_reauthorization(self, lifecycle, db_session):
        """Test a credential without refresh token cannot be renewed."""
        credential = LocationCredentialFactory(
            location_id="loc-1", refresh_token=None, expires_at=utc_now() - timedelta(minutes=1)
        )

        with pytest.raises(UpstreamAuthExpiredError):
            lifecycle.resolve("loc-1")

        db_session.refresh(credential)
        assert credential.is_active is False

    def test_force_renew_without_credential_raises(self, lifecycle):
        """Test forced renewal needs an active credential."""
        with pytest.raises(NoCredentialError):
            lifecycle.force_renew("loc-missing")


class TestAuthorize:
    """Test authorization code exchange."""

    def test_company_grant_registers_company_locations(self, lifecycle, mock_client, db_session):
        """Test a company-wide grant stores the credential and syncs its locations."""
        mock_client.exchange_code.return_value = grant(
            access_token="company-token", user_type="Company", company_id="comp-9"
        )
        mock_client.list_company_locations.return_value = [
            LocationInfo(location_id="loc-a", name="A"),
            LocationInfo(location_id="loc-b", name="B"),
        ]

        credential = lifecycle.authorize("auth-code")

        assert credential.credential_class == CredentialClass.COMPANY.value
        assert credential.scope_key == "comp-9"
        mock_client.list_company_locations.assert_called_once_with("company-token", "comp-9")
        locations = db_session.query(TenantLocation).order_by(TenantLocation.location_id).all()
        assert [loc.location_id for loc in locations] == ["loc-a", "loc-b"]
        assert all(loc.company_id == "comp-9" for loc in locations)

    def test_location_listing_failure_keeps_grant(self, lifecycle, mock_client, credential_store):
        """Test a failed location sync does not lose the stored company grant."""
        mock_client.exchange_code.return_value = grant(user_type="Company", company_id="comp-9")
        mock_client.list_company_locations.side_effect = UpstreamRequestError(
            "down", http_status=503
        )

        lifecycle.authorize("auth-code")

        assert credential_store.find_active(CredentialClass.COMPANY, "comp-9") is not None

    def test_location_grant_maps_location_to_company(self, lifecycle, mock_client, credential_store):
        """Test a location grant is stored and its company mapping registered."""
        mock_client.exchange_code.return_value = grant(
            user_type="Location", company_id="comp-9", location_id="loc-z"
        )

        credential = lifecycle.authorize("auth-code", installation_id="inst-1")

        assert credential.credential_class == CredentialClass.LOCATION.value
        assert credential.installation_id == "inst-1"
        assert credential_store.company_for_location("loc-z") == "comp-9"
