"""Shared test fixtures and configuration."""

import pytest
from typing import Dict, List

from residence_payments.config import Settings
from residence_payments.connectors import SimulatorConfig, SimulatorConnector
from residence_payments.database import (
    DatabaseManager,
    PaymentMethod,
    ServiceRepository,
    SqlLedgerStorage,
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for tests: in-memory database, no scheduler, no .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        api_key="test_api_key_12345",
        public_base_url="https://segreteria.example.org",
        reports_dir=str(tmp_path / "reports"),
        scheduler_enabled=False,
        poll_interval_seconds=0.01,
        poll_timeout_seconds=0.05,
    )


@pytest.fixture
async def db(settings):
    """Create an in-memory SQLite database for testing."""
    manager = DatabaseManager(settings.database_url)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
def storage(db) -> SqlLedgerStorage:
    return SqlLedgerStorage(db)


@pytest.fixture
def simulators() -> Dict[str, SimulatorConnector]:
    """One simulator per gateway, with auto-accept disabled."""
    config = SimulatorConfig(auto_accept_seconds=None)
    return {method.value: SimulatorConnector(method.value, config=config) for method in PaymentMethod}


@pytest.fixture
def add_service(db):
    """Factory that inserts a service line item and returns its id."""

    async def _add(sigla: str, amount: int, category: str = "siglatura", status: str = "unpaid") -> int:
        async with db.session() as session:
            item = await ServiceRepository(session).create(
                sigla=sigla, category=category, amount=amount, status=status
            )
            return item.id

    return _add


@pytest.fixture
async def student_145(add_service) -> List[int]:
    """Sigla 145 with one unpaid 0.50 EUR siglatura."""
    return [await add_service("145", 50)]
