"""
HTTP client for the CRM platform: OAuth token endpoints, resource reads and
marketplace billing.

The client is stateless with respect to credentials. Callers pass the bearer
token explicitly, which lets the call executor decide when to renew and retry.
Every request carries the configured timeout.
"""

from typing import Any, Dict, List, Optional

import pydantic
import requests

from ..config import UpstreamConfig, get_config
from ..exceptions import UpstreamRequestError, UpstreamUnauthorizedError
from ..schemas.credential_schemas import LocationInfo, TokenGrant
from ..utils.logger import get_logger


class CRMClient:
    """Thin requests-based wrapper around the CRM REST API."""

    def __init__(
        self,
        config: Optional[UpstreamConfig] = None,
        http: Optional[requests.Session] = None,
    ):
        self.config = config or get_config().upstream
        self.http = http or requests.Session()
        self.timeout = self.config.timeout_seconds
        self.logger = get_logger()

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Version": self.config.api_version,
        }

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise UpstreamRequestError(
                f"{method} {url} failed: {e}", cause=e, method=method, url=url
            ) from e

        if response.status_code == 401:
            raise UpstreamUnauthorizedError(method=method, url=url)
        if response.status_code >= 400:
            raise UpstreamRequestError(
                f"{method} {url} returned {response.status_code}",
                http_status=response.status_code,
                method=method,
                url=url,
                body=response.text[:500],
            )
        return response

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            # A success status with an unreadable body is an upstream fault
            raise UpstreamRequestError(
                f"Upstream returned a non-JSON body: {e}",
                http_status=502,
                cause=e,
                upstream_status=response.status_code,
                body=response.text[:500],
            ) from e

    def _grant(self, response: requests.Response) -> TokenGrant:
        try:
            return TokenGrant.model_validate(self._json(response))
        except pydantic.ValidationError as e:
            raise UpstreamRequestError(
                "Upstream returned a malformed token grant",
                http_status=502,
                cause=e,
                upstream_status=response.status_code,
            ) from e

    # OAuth

    def _token_request(self, form: Dict[str, str]) -> TokenGrant:
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            **form,
        }
        response = self._send(
            "POST",
            f"{self.config.oauth_url}/token",
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return self._grant(response)

    def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for a token grant."""
        form = {"grant_type": "authorization_code", "code": code}
        if self.config.redirect_uri:
            form["redirect_uri"] = self.config.redirect_uri
        return self._token_request(form)

    def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a fresh grant."""
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def derive_location_token(
        self, company_access_token: str, company_id: str, location_id: str
    ) -> TokenGrant:
        """Obtain a location-scoped grant using a company-wide access token."""
        response = self._send(
            "POST",
            f"{self.config.oauth_url}/locationToken",
            headers=self._headers(company_access_token),
            json={"companyId": company_id, "locationId": location_id},
        )
        grant = self._grant(response)
        if not grant.location_id:
            grant = grant.model_copy(update={"location_id": location_id})
        return grant

    def list_company_locations(
        self, company_access_token: str, company_id: str, limit: int = 100
    ) -> List[LocationInfo]:
        data = self.get(
            company_access_token,
            "/locations/search",
            params={"companyId": company_id, "limit": limit},
        )
        return [LocationInfo.from_api(item) for item in data.get("locations", [])]

    # Resources

    def get(
        self, access_token: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        response = self._send(
            "GET", f"{self.config.base_url}{path}", headers=self._headers(access_token), params=params
        )
        return self._json(response)

    def post(
        self, access_token: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        response = self._send(
            "POST", f"{self.config.base_url}{path}", headers=self._headers(access_token), json=payload
        )
        return self._json(response)

    def search_conversations(self, access_token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET /conversations/search; returns {conversations, total}."""
        return self.get(access_token, "/conversations/search", params=params)

    def export_messages(self, access_token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET /conversations/messages/export; returns {messages, nextCursor, total}."""
        return self.get(access_token, "/conversations/messages/export", params=params)

    # Marketplace billing

    def get_rebilling_config(self, access_token: str, app_id: str) -> List[Dict[str, Any]]:
        """Return the configured meters as [{meterId, centsPrice}]."""
        data = self.get(
            access_token, f"/marketplace/billing/charges/rebilling-config/{app_id}"
        )
        return data.get("meters", [])

    def has_funds(self, access_token: str, company_id: str) -> bool:
        data = self.get(
            access_token, "/marketplace/billing/charges/has-funds", params={"companyId": company_id}
        )
        return data.get("hasFunds") is True

    def create_charge(self, access_token: str, company_id: str, meter_id: str, qty: int) -> str:
        """Submit one metered charge and return the upstream charge id."""
        data = self.post(
            access_token,
            "/marketplace/billing/charges",
            {"companyId": company_id, "meterId": meter_id, "qty": qty},
        )
        charge_id = data.get("chargeId") or data.get("id") or data.get("_id")
        if not charge_id:
            raise UpstreamRequestError(
                "Charge response did not include a charge id", meter_id=meter_id
            )
        return str(charge_id)
