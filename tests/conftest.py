"""
Test fixtures shared by all tests.

Provides an in-memory SQLite database, a per-test session with freshly
created tables, and an isolated application configuration.
"""

import pytest
from sqlalchemy.orm import Session

from crm_export_core.config import AppConfig, ExportConfig, reset_config, set_config
from crm_export_core.constants import ExportSinkKind
from crm_export_core.context.tenant_context import TenantContext
from crm_export_core.db import DatabaseConfig, DatabaseManager, import_all_models
from crm_export_core.db.db_config import Base, initialize_db
from crm_export_core.exceptions import clear_correlation_id
from crm_export_core.functions.handlers import reset_price_cache


@pytest.fixture(scope="session")
def db_config() -> DatabaseConfig:
    """Create SQLite in-memory database configuration for testing."""
    return DatabaseConfig(
        db_type="sqlite",
        database=":memory:",
        echo=False,
        development_mode=True,
    )


@pytest.fixture(scope="session")
def db_manager(db_config: DatabaseConfig) -> DatabaseManager:
    """Create and initialize database manager with all models."""
    import_all_models()
    return initialize_db(db_config)


@pytest.fixture(scope="function")
def db_session(db_manager: DatabaseManager) -> Session:
    """
    Create a database session for each test.

    Tables are created before and dropped after every test so no state
    leaks between tests.
    """
    session = db_manager.get_session()
    Base.metadata.create_all(db_manager.engine)

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(db_manager.engine)


@pytest.fixture(autouse=True)
def app_config(tmp_path) -> AppConfig:
    """Install a fresh configuration with exports written under tmp_path."""
    config = AppConfig(
        export=ExportConfig(sink=ExportSinkKind.LOCAL, output_dir=str(tmp_path / "exports"))
    )
    config.upstream.app_id = "app-123"
    config.upstream.client_id = "client-id"
    config.upstream.client_secret = "client-secret"
    set_config(config)

    yield config

    reset_config()
    reset_price_cache()
    TenantContext.clear_current_tenant()
    clear_correlation_id()


@pytest.fixture
def location_id() -> str:
    return "loc-1"


@pytest.fixture
def company_id() -> str:
    return "comp-1"
