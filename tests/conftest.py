"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of nuvia.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from nuvia.config import NuviaConfig, ReferralConfig  # noqa: E402
from nuvia.database.models import Base, User  # noqa: E402
from nuvia.database.seed import seed_defaults  # noqa: E402
from nuvia.services.chain_verifier import TxReceipt, VerificationOutcome  # noqa: E402
from nuvia.services.contract_registry import ContractRegistry  # noqa: E402
from nuvia.services.xp_service import AwardContext  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# ---------------------------------------------------------------------------
# Well-known test addresses
# ---------------------------------------------------------------------------
WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
WALLET_C = "0x" + "c" * 40
ADMIN_WALLET = "0x" + "d" * 40
FAUCET = "0x" + "1" * 40
VAULT_USDC = "0x" + "2" * 40
STRATEGY_USDC = "0x" + "3" * 40
OUTSIDER = "0x" + "9" * 40
CHAIN_ID = 84532

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)  # a Thursday


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Nuvia tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the async routes).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def seeded_engine(db_engine: Engine) -> Engine:
    """In-memory engine with the default rules and quests."""
    seed_defaults(db_engine)
    return db_engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for tests that hit the DB from many threads.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers
    queue on the database lock (busy timeout) instead of failing with
    lock-upgrade errors.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'nuvia-test.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def create_user(
    engine: Engine,
    wallet: str = WALLET_A,
    *,
    code: str | None = None,
    is_admin: bool = False,
    logged_in: bool = False,
) -> int:
    """Insert a user row directly and return its id."""
    with Session(engine) as session:
        user = User(
            wallet_address=wallet.lower(),
            referral_code=code or f"NUV-{wallet[-6:].upper()}",
            is_admin=is_admin,
            first_login_at=T0 if logged_in else None,
        )
        session.add(user)
        session.commit()
        return user.id


@pytest.fixture
def make_user():
    """Factory fixture wrapping :func:`create_user`."""
    return create_user


# ---------------------------------------------------------------------------
# Configuration & collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def nuvia_config() -> NuviaConfig:
    return NuviaConfig(
        app_name="Nuvia Test",
        chains={CHAIN_ID: "https://rpc.test"},
        contracts={
            "faucet": FAUCET,
            "vaultUSDC": VAULT_USDC,
            "strategyUSDC": STRATEGY_USDC,
        },
        tokens={"USDC": "0x" + "4" * 40},
        referral=ReferralConfig(inviter_xp=500, invitee_xp=100, min_xp_threshold=100),
    )


@pytest.fixture
def registry(nuvia_config: NuviaConfig) -> ContractRegistry:
    return ContractRegistry.from_config(nuvia_config)


class FakeVerifier:
    """In-process :class:`TransactionVerifier` with a scripted answer.

    By default every transaction is confirmed, sent by *sender* to the
    expected contract (or the USDC vault when none is expected).
    """

    def __init__(
        self,
        *,
        sender: str = WALLET_A,
        to_address: str | None = None,
        outcome: VerificationOutcome | None = None,
    ) -> None:
        self.sender = sender
        self.to_address = to_address
        self.outcome = outcome
        self.calls: list[tuple[str, int, str | None]] = []

    def verify(self, tx_hash, chain_id, expected_contract=None):
        self.calls.append((tx_hash, chain_id, expected_contract))
        if self.outcome is not None:
            return self.outcome
        return VerificationOutcome(
            True,
            receipt=TxReceipt(
                block_number=100,
                from_address=self.sender.lower(),
                to_address=(self.to_address or expected_contract or VAULT_USDC).lower(),
                gas_used="21000",
            ),
        )


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def award_ctx(registry, fake_verifier, nuvia_config) -> AwardContext:
    return AwardContext(
        registry=registry,
        verifier=fake_verifier,
        referral=nuvia_config.referral,
    )


def deposit_metadata(
    tx: str = "0xabc", amount="15", chain_id=CHAIN_ID, token: str = "USDC"
) -> dict:
    return {
        "txHash": tx,
        "chainId": chain_id,
        "tokenSymbol": token,
        "amount": amount,
    }
