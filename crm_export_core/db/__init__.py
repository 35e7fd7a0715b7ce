from .db_base import JSON, EncryptedBinary, TimestampMixin, UUIDMixin, as_utc, utc_now
from .db_billing_models import BillingTransaction
from .db_config import (
    Base,
    DatabaseConfig,
    DatabaseManager,
    get_db_manager,
    import_all_models,
    initialize_db,
)
from .db_credential_models import ArchivedCredential, Credential
from .db_export_job_models import ExportJob
from .db_tenant_models import Installation, TenantLocation

__all__ = [
    # Base types
    "Base",
    "JSON",
    "EncryptedBinary",
    "TimestampMixin",
    "UUIDMixin",
    "as_utc",
    "utc_now",
    # Configuration
    "DatabaseConfig",
    "DatabaseManager",
    "get_db_manager",
    "import_all_models",
    "initialize_db",
    # Models
    "ArchivedCredential",
    "BillingTransaction",
    "Credential",
    "ExportJob",
    "Installation",
    "TenantLocation",
]
