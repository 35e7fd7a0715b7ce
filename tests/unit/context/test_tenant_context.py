"""
Tests for tenant scope tracking.
"""

import threading

import pytest

from crm_export_core.context.tenant_context import TenantContext, tenant_context
from crm_export_core.exceptions import ValidationError


class TestTenantContext:
    def test_nested_scopes_restore_outer_scope(self):
        with tenant_context("loc-1", "comp-1"):
            with tenant_context(None, "comp-2"):
                assert TenantContext.get_current_location_id() is None
                assert TenantContext.get_current_company_id() == "comp-2"
            assert TenantContext.get_current_location_id() == "loc-1"
            assert TenantContext.get_current_company_id() == "comp-1"

        assert TenantContext.get_current_location_id() is None

    def test_scope_is_cleared_on_error(self):
        with pytest.raises(RuntimeError):
            with tenant_context("loc-1"):
                raise RuntimeError("fail")

        assert TenantContext.get_current_location_id() is None

    @pytest.mark.parametrize("location_id,company_id", [(None, None), ("  ", ""), (123, None)])
    def test_empty_scope_is_rejected(self, location_id, company_id):
        with pytest.raises(ValidationError):
            TenantContext.set_current_tenant(location_id, company_id)

    def test_scope_is_thread_local(self):
        seen = []
        TenantContext.set_current_tenant("loc-main")

        thread = threading.Thread(target=lambda: seen.append(TenantContext.get_current_location_id()))
        thread.start()
        thread.join()

        assert seen == [None]
        assert TenantContext.get_current_location_id() == "loc-main"
