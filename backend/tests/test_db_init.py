"""
Test Suite: Database Initialization
===================================

- Collections and indexes created once, re-runs are no-ops
- Dry run changes nothing
- Production requires explicit confirmation
"""

import sys
from pathlib import Path

import pytest
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import DuplicateKeyError

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_engine.db_init import INIT_VERSION, REQUIRED_COLLECTIONS, check_environment, ensure_schema


class TestEnsureSchema:

    @pytest.mark.asyncio
    async def test_creates_everything(self):
        db = AsyncMongoMockClient()["init_test"]
        lines = await ensure_schema(db)

        assert set(REQUIRED_COLLECTIONS) <= set(await db.list_collection_names())
        indexes = await db["credit_ledger"].index_information()
        assert "idx_reference_reason_unique" in indexes
        assert any("[CREATE]" in line for line in lines)

        meta = await db.credit_engine_meta.find_one({"_id": "credit_engine_init"})
        assert meta["version"] == INIT_VERSION

    @pytest.mark.asyncio
    async def test_second_run_skips(self, db):
        lines = await ensure_schema(db)
        assert not any("[CREATE]" in line for line in lines)
        assert sum(1 for line in lines if "[SKIP]" in line) >= len(REQUIRED_COLLECTIONS)

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self):
        db = AsyncMongoMockClient()["dry_run_test"]
        lines = await ensure_schema(db, dry_run=True)

        assert all("[CREATE]" not in line for line in lines)
        assert await db.credit_engine_meta.find_one({"_id": "credit_engine_init"}) is None

    @pytest.mark.asyncio
    async def test_unique_ledger_key_enforced(self, db):
        entry = {"external_reference": "purchase:inv_1", "reason": "purchase", "account_id": "a"}
        await db["credit_ledger"].insert_one(dict(entry))
        with pytest.raises(DuplicateKeyError):
            await db["credit_ledger"].insert_one(dict(entry))


class TestEnvironmentGuard:

    def test_development_allowed(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)
        allowed, _ = check_environment()
        assert allowed is True

    def test_production_blocked_without_confirmation(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.delenv("CREDIT_ENGINE_INIT_CONFIRM", raising=False)
        allowed, message = check_environment()
        assert allowed is False
        assert "CREDIT_ENGINE_INIT_CONFIRM=YES" in message

    def test_production_confirmed(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("CREDIT_ENGINE_INIT_CONFIRM", "YES")
        allowed, _ = check_environment()
        assert allowed is True
