from .tenant_context import TenantContext, tenant_context

__all__ = ["TenantContext", "tenant_context"]
