"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of aureus.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from aureus.config import AureusConfig  # noqa: E402
from aureus.database.models import Base  # noqa: E402

_jsonb_sqlite_registered = False

CHAIN_ID = 31337
CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ALICE = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BOB = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
ADMIN = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"

# 2024-01-01T00:00:00Z
T0 = 1_704_067_200
DAY = 86_400


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def make_config(event_source: str = "ledger", **overrides) -> AureusConfig:
    values = {
        "chain_id": CHAIN_ID,
        "contract_address": CONTRACT,
        "event_source": event_source,
        "dashboard_port": 8000,
        "min_stake_amount": 1_000,
        "rpc_url": "http://node.test" if event_source == "rpc" else None,
    }
    values.update(overrides)
    return AureusConfig(**values)


@pytest.fixture
def cfg() -> AureusConfig:
    return make_config()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Aureus tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def ledger_engine(db_engine: Engine, cfg: AureusConfig) -> Engine:
    """Engine with settings, the ledger contract and default packages seeded."""
    from aureus.database.seed import seed_contract, seed_default_settings

    seed_default_settings(db_engine)
    seed_contract(db_engine, cfg, now=T0 - DAY)
    return db_engine


@pytest.fixture
def funded_engine(ledger_engine: Engine) -> Engine:
    """Seeded ledger holding plenty of reward liquidity."""
    from aureus.services import admin_service

    admin_service.fund_rewards(
        ledger_engine,
        chain_id=CHAIN_ID,
        contract_address=CONTRACT,
        actor_id=ADMIN,
        amount=10**30,
        now=T0 - DAY,
    )
    return ledger_engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = ADMIN, username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from aureus.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_account_token(address: str = ALICE) -> str:
    """A non-admin JWT whose subject is a wallet address."""
    import jwt

    from aureus.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": address}, JWT_SECRET, algorithm=JWT_ALGORITHM)


@pytest.fixture
def client(funded_engine: Engine, cfg: AureusConfig):
    """FastAPI TestClient wired to the seeded in-memory ledger."""
    from fastapi.testclient import TestClient

    from aureus.api.deps import get_config, get_engine
    from aureus.api.main import app

    app.dependency_overrides[get_engine] = lambda: funded_engine
    app.dependency_overrides[get_config] = lambda: cfg
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


def sync_projection(engine: Engine):
    """Project everything the ledger has journaled so far."""
    from aureus.chain.provider import LedgerEventSource
    from aureus.services.settings_service import SyncSettings
    from aureus.services.sync_service import run_sync_pass

    return run_sync_pass(
        engine,
        LedgerEventSource(engine, CHAIN_ID, CONTRACT),
        CHAIN_ID,
        CONTRACT,
        settings=SyncSettings(confirmations=0, max_retries=0),
    )
