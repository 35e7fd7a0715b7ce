"""
Tenant scope management for the CRM export core.

A tenant scope is a location and, when known, its owning company. The scope
is kept in thread-local storage so logs and errors raised deep inside the
credential and export layers can be attributed to the right tenant.
"""

import threading
from contextlib import contextmanager
from typing import Generator, Optional

from ..exceptions import ErrorCode, ValidationError
from ..utils.logger import get_logger


class TenantContext:
    """Manages the current tenant scope using thread-local storage."""

    _thread_local = threading.local()

    @classmethod
    def set_current_tenant(cls, location_id: Optional[str], company_id: Optional[str] = None) -> None:
        """
        Set the current tenant scope for the execution context.

        Args:
            location_id: Location being served, None for company-wide work
            company_id: Owning company when known

        Raises:
            ValidationError: If neither identifier is a non-empty string
        """
        location_id = location_id.strip() if isinstance(location_id, str) else None
        company_id = company_id.strip() if isinstance(company_id, str) else None
        if not location_id and not company_id:
            raise ValidationError(
                "location_id or company_id must be a non-empty string",
                error_code=ErrorCode.MISSING_REQUIRED,
                field="location_id",
            )

        cls._thread_local.location_id = location_id or None
        cls._thread_local.company_id = company_id or None
        get_logger().debug(
            "Current tenant set",
            extra={"location_id": location_id, "company_id": company_id},
        )

    @classmethod
    def get_current_location_id(cls) -> Optional[str]:
        return getattr(cls._thread_local, "location_id", None)

    @classmethod
    def get_current_company_id(cls) -> Optional[str]:
        return getattr(cls._thread_local, "company_id", None)

    @classmethod
    def clear_current_tenant(cls) -> None:
        for attr in ("location_id", "company_id"):
            if hasattr(cls._thread_local, attr):
                delattr(cls._thread_local, attr)


@contextmanager
def tenant_context(
    location_id: Optional[str], company_id: Optional[str] = None
) -> Generator[None, None, None]:
    """
    Context manager for tenant-scoped operations.

    Sets the scope for the duration of the block and restores the previous
    scope afterward.
    """
    previous_location = TenantContext.get_current_location_id()
    previous_company = TenantContext.get_current_company_id()
    TenantContext.set_current_tenant(location_id, company_id)
    try:
        yield
    finally:
        if previous_location or previous_company:
            TenantContext.set_current_tenant(previous_location, previous_company)
        else:
            TenantContext.clear_current_tenant()

