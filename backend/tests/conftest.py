"""
Shared fixtures for credit engine tests.

The database is an in-memory mongomock-motor instance initialised through
db_init.ensure_schema, so the unique ledger index that credit idempotency
relies on is present exactly as in production.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_engine.db_init import ensure_schema
from credit_engine.ledger import CreditLedger
from credit_engine.models import EntitlementStatus
from credit_engine.store import AccountStore

WALLET = "0x" + "ab" * 20
GATE_CONTRACT = "0x" + "11" * 20


class FakeClock:
    """Monotonic clock the tests can move forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["credit_engine_test"]
    await ensure_schema(database)
    return database


@pytest.fixture
def store(db):
    return AccountStore(db)


@pytest.fixture
def ledger(store):
    return CreditLedger(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_gate():
    return {
        "enabled": True,
        "contract_address": GATE_CONTRACT,
        "chain_id": "8453",
        "chain_name": "Base",
        "name": "SEISO",
        "is_fungible": True,
        "decimals": 18,
        "minimum_balance": 1,
    }


@pytest.fixture
def holder_resolver():
    """Resolver stub reporting a fungible token holder."""
    resolver = AsyncMock()
    resolver.resolve.return_value = EntitlementStatus(
        address=WALLET, has_access=True, balance=5.0, source="token", chain_id="8453"
    )
    resolver.find_collection.return_value = None
    return resolver


async def fund(ledger: CreditLedger, account_id: str, credits: float, wallet: str = None) -> None:
    await ledger.get_or_create_account(account_id, wallet_address=wallet)
    await ledger.credit_with_idempotency(account_id, credits, f"seed:{account_id}:{credits}", "purchase")
