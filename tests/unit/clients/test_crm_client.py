"""
Tests for CRMClient request handling and error mapping.
"""

from unittest.mock import Mock

import pydantic
import pytest
import requests

from crm_export_core.clients.crm_client import CRMClient
from crm_export_core.config import UpstreamConfig
from crm_export_core.exceptions import UpstreamRequestError, UpstreamUnauthorizedError


def response(status_code=200, payload=None):
    resp = Mock(spec=requests.Response)
    resp.status_code = status_code
    resp.content = b"{}" if payload is None else b"x"
    resp.text = "" if payload is None else str(payload)
    resp.json.return_value = payload or {}
    return resp


@pytest.fixture
def http():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(http):
    config = UpstreamConfig(
        base_url="https://api.example.test/",
        oauth_url="https://api.example.test/oauth",
        client_id="client-id",
        client_secret="client-secret",
        timeout_seconds=12,
    )
    return CRMClient(config=config, http=http)


class TestRequests:
    def test_bearer_version_and_timeout_on_every_call(self, client, http):
        http.request.return_value = response(payload={"hasFunds": True})

        assert client.has_funds("token-1", "comp-1") is True

        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert method == "GET"
        assert url == "https://api.example.test/marketplace/billing/charges/has-funds"
        assert kwargs["timeout"] == 12
        assert kwargs["headers"]["Authorization"] == "Bearer token-1"
        assert kwargs["headers"]["Version"] == "2021-07-28"
        assert kwargs["params"] == {"companyId": "comp-1"}

    def test_401_raises_unauthorized(self, client, http):
        http.request.return_value = response(status_code=401, payload={"message": "expired"})

        with pytest.raises(UpstreamUnauthorizedError):
            client.export_messages("token", {"locationId": "loc-1"})

    def test_server_error_is_retryable(self, client, http):
        http.request.return_value = response(status_code=503, payload={"message": "down"})

        with pytest.raises(UpstreamRequestError) as exc_info:
            client.search_conversations("token", {})

        assert exc_info.value.http_status == 503
        assert exc_info.value.retryable is True

    def test_transport_error_has_no_status(self, client, http):
        http.request.side_effect = requests.ConnectionError("reset")

        with pytest.raises(UpstreamRequestError) as exc_info:
            client.get("token", "/anything")

        assert exc_info.value.http_status is None
        assert isinstance(exc_info.value.cause, requests.ConnectionError)


class TestOAuth:
    def test_refresh_posts_form_with_client_credentials(self, client, http):
        http.request.return_value = response(
            payload={"access_token": "a", "refresh_token": "r", "expires_in": 86399}
        )

        grant = client.refresh("old-refresh")

        assert grant.access_token == "a"
        form = http.request.call_args.kwargs["data"]
        assert form == {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "grant_type": "refresh_token",
            "refresh_token": "old-refresh",
        }

    def test_derived_grant_is_bound_to_location(self, client, http):
        http.request.return_value = response(
            payload={"access_token": "a", "expires_in": 86399, "userType": "Location"}
        )

        grant = client.derive_location_token("company-token", "comp-1", "loc-1")

        assert grant.location_id == "loc-1"
        assert http.request.call_args.kwargs["json"] == {"companyId": "comp-1", "locationId": "loc-1"}

    def test_malformed_grant_is_an_upstream_error(self, client, http):
        http.request.return_value = response(payload={"access_token": "a"})

        with pytest.raises(UpstreamRequestError) as exc_info:
            client.refresh("old-refresh")

        assert exc_info.value.http_status == 502
        assert exc_info.value.context["upstream_status"] == 200
        assert isinstance(exc_info.value.cause, pydantic.ValidationError)

    def test_non_json_token_response_is_an_upstream_error(self, client, http):
        resp = response(payload={"access_token": "a"})
        resp.json.side_effect = requests.JSONDecodeError("Expecting value", "<html>", 0)
        http.request.return_value = resp

        with pytest.raises(UpstreamRequestError) as exc_info:
            client.exchange_code("auth-code")

        assert exc_info.value.http_status == 502
        assert exc_info.value.retryable is True


class TestBilling:
    @pytest.mark.parametrize("payload", [{"chargeId": "ch-1"}, {"id": "ch-1"}, {"_id": "ch-1"}])
    def test_charge_id_variants(self, client, http, payload):
        http.request.return_value = response(payload=payload)

        assert client.create_charge("token", "comp-1", "email", 3) == "ch-1"

    def test_charge_without_id_fails(self, client, http):
        http.request.return_value = response(payload={"ok": True})

        with pytest.raises(UpstreamRequestError):
            client.create_charge("token", "comp-1", "email", 3)

    def test_rebilling_meters(self, client, http):
        meters = [{"meterId": "email", "centsPrice": 0.3}]
        http.request.return_value = response(payload={"meters": meters})

        assert client.get_rebilling_config("token", "app-1") == meters
        assert http.request.call_args.args[1].endswith("/rebilling-config/app-1")
