"""
Engine and session management.

SQLite backs tests and local runs; PostgreSQL (with pgcrypto for token
columns) backs deployed function apps. The process holds one DatabaseManager
created by initialize_db().
"""

import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import create_engine
from sqlalchemy.engine import URL
from sqlalchemy.orm import Session, declarative_base, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..constants import EnvironmentVariable
from ..exceptions import ErrorCode, ServiceError, ValidationError
from ..utils.logger import get_logger

# Declarative base shared by every model module
Base: Any = declarative_base()

SUPPORTED_DB_TYPES = ("postgresql", "sqlite")


def _env(name: EnvironmentVariable, default: str) -> str:
    return os.getenv(name.value, default)


class DatabaseConfig(BaseModel):
    """Connection settings for one database."""

    model_config = ConfigDict(frozen=True)

    db_type: str = "postgresql"
    database: str
    host: Optional[str] = None
    port: int = 5432
    username: Optional[str] = None
    password: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    echo: bool = False
    development_mode: bool = False

    @field_validator("db_type")
    def normalize_db_type(cls, v: str) -> str:
        v = v.lower()
        return "postgresql" if v == "postgres" else v

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """PostgreSQL settings for a deployed app, or SQLite when DB_TYPE=sqlite."""
        db_type = _env(EnvironmentVariable.DB_TYPE, "postgresql")
        echo = _env(EnvironmentVariable.DB_ECHO, "false").lower() == "true"
        if db_type.lower() == "sqlite":
            return cls.for_development(echo=echo)
        return cls(
            db_type=db_type,
            host=_env(EnvironmentVariable.DB_HOST, "localhost"),
            port=int(_env(EnvironmentVariable.DB_PORT, "5432")),
            database=_env(EnvironmentVariable.DB_NAME, "crm_export"),
            username=_env(EnvironmentVariable.DB_USER, "postgres"),
            password=_env(EnvironmentVariable.DB_PASSWORD, ""),
            pool_size=int(_env(EnvironmentVariable.DB_POOL_SIZE, "5")),
            echo=echo,
        )

    @classmethod
    def for_development(cls, echo: bool = False) -> "DatabaseConfig":
        """SQLite at DB_NAME, in memory by default; tables may be dropped."""
        return cls(
            db_type="sqlite",
            database=_env(EnvironmentVariable.DB_NAME, ":memory:"),
            echo=echo,
            development_mode=True,
        )

    def url(self) -> URL:
        """
        SQLAlchemy URL for these settings.

        Raises:
            ValidationError: If the type is unsupported or PostgreSQL settings
                are incomplete
        """
        if self.db_type == "sqlite":
            return URL.create("sqlite", database=self.database)
        if self.db_type != "postgresql":
            raise ValidationError(
                f"Unsupported database type: {self.db_type}",
                field="db_type",
                error_code=ErrorCode.INVALID_FORMAT,
                supported=list(SUPPORTED_DB_TYPES),
            )
        if not (self.host and self.username and self.password):
            raise ValidationError(
                "PostgreSQL needs host, username and password",
                field="database_config",
                error_code=ErrorCode.MISSING_REQUIRED,
                host=self.host,
                database=self.database,
            )
        return URL.create(
            "postgresql+psycopg2",
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(db_type='{self.db_type}', host='{self.host}', "
            f"port={self.port}, database='{self.database}', "
            f"username='{self.username}', password='***')"
        )


class DatabaseManager:
    """Owns the engine and a thread-scoped session registry."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = self._build_engine()
        self.scoped_session = scoped_session(sessionmaker(bind=self.engine))

    def _build_engine(self):
        url = self.config.url()
        if self.config.db_type == "sqlite":
            kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if self.config.database == ":memory:":
                # One shared connection, otherwise every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
            return create_engine(url, echo=self.config.echo, **kwargs)
        return create_engine(
            url,
            echo=self.config.echo,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_pre_ping=True,
        )

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        if not self.config.development_mode:
            raise ServiceError(
                "Refusing to drop tables outside development mode",
                error_code=ErrorCode.CONFIGURATION_ERROR,
                operation="drop_tables",
            )
        Base.metadata.drop_all(self.engine)

    def get_session(self) -> Session:
        return self.scoped_session()

    def close_session(self, session: Optional[Session] = None) -> None:
        if session is not None:
            session.close()
        self.scoped_session.remove()

    def dispose(self) -> None:
        self.scoped_session.remove()
        self.engine.dispose()


def import_all_models():
    """Register every model on Base.metadata."""
    from sqlalchemy.orm import configure_mappers

    from .db_billing_models import BillingTransaction  # noqa
    from .db_credential_models import ArchivedCredential, Credential  # noqa
    from .db_export_job_models import ExportJob  # noqa
    from .db_tenant_models import Installation, TenantLocation  # noqa

    configure_mappers()


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """
    Return the process-wide manager.

    Raises:
        ServiceError: If initialize_db() has not run
    """
    if _db_manager is None:
        raise ServiceError(
            "Database is not initialized; call initialize_db() first",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            operation="get_db_manager",
        )
    return _db_manager


def initialize_db(config: Optional[DatabaseConfig] = None) -> DatabaseManager:
    """
    Create the process-wide manager and any missing tables.

    Args:
        config: Connection settings, DatabaseConfig.from_env() when omitted

    Returns:
        The new DatabaseManager
    """
    global _db_manager

    config = config or DatabaseConfig.from_env()
    get_logger().info(
        "Initializing database",
        extra={"db_type": config.db_type, "development_mode": config.development_mode},
    )
    if _db_manager is not None:
        _db_manager.dispose()
    _db_manager = DatabaseManager(config)

    import_all_models()
    _db_manager.create_tables()
    return _db_manager
