"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: in-memory SQLite, each test inside a transaction
  that is rolled back afterwards (code under test may commit freely; its
  commits only release savepoints)
- quota_plans: published plans for every tier on both tracks
- make_account: factory for ledger rows
- usage_plan_client / gateway: real QuotaAssociationGateway over a mocked
  boto3 wrapper
"""

import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from entitlement_engine.config.billing_catalog import get_billing_catalog, reset_billing_catalog
from entitlement_engine.config.settings import EngineSettings, reset_settings
from entitlement_engine.database.session import init_db
from entitlement_engine.models.account import Account, Tier, Track
from entitlement_engine.models.quota_plan import QuotaPlan
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.services.account_locks import AccountLockPool
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

FIXED_NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

# Monthly quota per tier; RPC plans publish ten times less
PLAN_QUOTAS = {
    Tier.FREE: 100_000,
    Tier.STARTER: 1_000_000,
    Tier.GROWTH: 5_000_000,
    Tier.BUSINESS: 10_000_000,
    Tier.ENTERPRISE: 50_000_000,
}


def plan_id(track: Track, tier: Tier) -> str:
    return f"up-{track.value}-{tier.value.lower()}"


@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine with working SAVEPOINT support."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop cached settings and catalog between tests."""
    reset_settings()
    reset_billing_catalog()
    yield
    reset_settings()
    reset_billing_catalog()


@pytest.fixture
def settings():
    return EngineSettings(env="test")


@pytest.fixture
def catalog():
    return get_billing_catalog()


@pytest.fixture
def locks():
    return AccountLockPool()


@pytest.fixture
def quota_plans(db_session):
    """Publish a plan for every tier on both tracks."""
    plans = []
    for track in Track:
        for tier, quota in PLAN_QUOTAS.items():
            name = tier.value if track == Track.API else f"{tier.value} Archival MultiNode"
            plans.append(QuotaPlan(
                name=name,
                external_plan_id=plan_id(track, tier),
                requests_per_month=quota if track == Track.API else quota // 10,
                requests_per_second=10,
                burst_requests_per_second=20,
            ))
    db_session.add_all(plans)
    db_session.commit()
    return {p.name: p for p in plans}


@pytest.fixture
def make_account(db_session):
    """Factory fixture for accounts with a key and a billing customer."""
    def _make(**overrides) -> Account:
        values = {
            "email": f"user-{uuid.uuid4().hex[:8]}@example.com",
            "billing_customer_ref": f"cus_{uuid.uuid4().hex[:14]}",
            "external_api_key_ref": f"key-{uuid.uuid4().hex[:10]}",
            "api_tier": Tier.FREE.value,
            "rpc_tier": Tier.FREE.value,
            "api_request_limit": PLAN_QUOTAS[Tier.FREE],
            "rpc_request_limit": PLAN_QUOTAS[Tier.FREE] // 10,
            "referral_points": Decimal("0"),
        }
        values.update(overrides)
        account = Account(**values)
        db_session.add(account)
        db_session.commit()
        return account
    return _make


@pytest.fixture
def usage_plan_client():
    """Mocked boto3 wrapper; every call succeeds by default."""
    client = MagicMock()
    client.create_usage_plan_key.return_value = {}
    client.delete_usage_plan_key.return_value = {}
    client.create_api_key.return_value = {"id": "key-new"}
    return client


@pytest.fixture
def gateway(usage_plan_client, db_session):
    return QuotaAssociationGateway(usage_plan_client, QuotaPlansRepository(db_session))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as exercising several components together")
