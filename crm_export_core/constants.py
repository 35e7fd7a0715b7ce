"""
Constants and enums for the CRM export core.

Centralizes the magic strings shared by the credential, billing and
export job layers so persisted values stay consistent.
"""

from enum import Enum


class QueueName(str, Enum):
    """Queue names used for job dispatch."""

    EXPORT_JOBS = "export-jobs-queue"


class CredentialClass(str, Enum):
    """Scope a credential was issued for."""

    COMPANY = "company"
    LOCATION = "location"


class JobStatus(str, Enum):
    """Lifecycle states of an export job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class TransactionStatus(str, Enum):
    """Lifecycle states of a billing transaction."""

    PENDING = "pending"
    CHARGED = "charged"
    FAILED = "failed"


class ExportType(str, Enum):
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


class ExportSinkKind(str, Enum):
    """Where assembled exports are stored."""

    BLOB = "blob"
    LOCAL = "local"


class ItemCategory(str, Enum):
    """Billable item categories, one meter each."""

    CONVERSATIONS = "conversations"
    SMS_WHATSAPP = "smsWhatsapp"
    EMAIL = "email"


class DeletionReason(str, Enum):
    """Why a credential was moved to the archive."""

    APP_UNINSTALL = "app_uninstall"
    MANUAL_REVOKE = "manual_revoke"
    SECURITY_INCIDENT = "security_incident"
    TOKEN_EXPIRED = "token_expired"


class InstallationStatus(str, Enum):
    ACTIVE = "active"
    UNINSTALLED = "uninstalled"


class WebhookEventType(str, Enum):
    """Marketplace webhook event types handled by the installation service."""

    INSTALL = "INSTALL"
    UNINSTALL = "UNINSTALL"


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    AZURE_STORAGE_CONNECTION = "AzureWebJobsStorage"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    DEBUG = "DEBUG"
    EXPORT_QUEUE_NAME = "EXPORT_QUEUE_NAME"
    CRM_BASE_URL = "CRM_BASE_URL"
    CRM_OAUTH_URL = "CRM_OAUTH_URL"
    CRM_CLIENT_ID = "CRM_CLIENT_ID"
    CRM_CLIENT_SECRET = "CRM_CLIENT_SECRET"
    CRM_APP_ID = "CRM_APP_ID"
    CRM_REDIRECT_URI = "CRM_REDIRECT_URI"
    HTTP_TIMEOUT = "HTTP_TIMEOUT"
    EXPORT_OUTPUT_DIR = "EXPORT_OUTPUT_DIR"
    EXPORT_SINK = "EXPORT_SINK"
    EXPORT_BLOB_CONTAINER = "EXPORT_BLOB_CONTAINER"
    EXPORT_LINK_EXPIRY_DAYS = "EXPORT_LINK_EXPIRY_DAYS"
    BREVO_API_KEY = "BREVO_API_KEY"
    BREVO_API_URL = "BREVO_API_URL"
    EMAIL_FROM_NAME = "EMAIL_FROM_NAME"
    EMAIL_FROM_ADDRESS = "EMAIL_FROM_ADDRESS"
    ENCRYPTION_KEY = "ENCRYPTION_KEY"
    DB_TYPE = "DB_TYPE"
    DB_HOST = "DB_HOST"
    DB_PORT = "DB_PORT"
    DB_NAME = "DB_NAME"
    DB_USER = "DB_USER"
    DB_PASSWORD = "DB_PASSWORD"
    DB_POOL_SIZE = "DB_POOL_SIZE"
    DB_ECHO = "DB_ECHO"


# Upstream API version header value
CRM_API_VERSION = "2021-07-28"
