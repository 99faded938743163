"""
Credit Engine Database Initialization Script

RULES:
1. Environment Guard - requires CREDIT_ENGINE_INIT_CONFIRM=YES when APP_ENV=production
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy account creation - accounts are created on first use, not here
5. Safe index creation - handles "index already exists" gracefully
6. Dry-run mode - --dry-run prints what it would do
7. Version stamp - tracks init version

The unique ledger index is load-bearing: credit idempotency depends on it.

Usage:
    CLI one-off: python -m credit_engine.db_init
    With dry-run: python -m credit_engine.db_init --dry-run
    In production: APP_ENV=production CREDIT_ENGINE_INIT_CONFIRM=YES python -m credit_engine.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "accounts",
    "credit_ledger",
    "pay_per_call_settlements",
    "credit_engine_meta",
]

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("accounts", [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("accounts", [("wallet_address", 1)], {"sparse": True, "name": "idx_wallet_address"}),

    # One entry per (reference, reason): duplicate credits fail at insert
    ("credit_ledger", [("external_reference", 1), ("reason", 1)],
     {"unique": True, "name": "idx_reference_reason_unique"}),
    ("credit_ledger", [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),
    ("credit_ledger", [("state", 1), ("timestamp", 1)], {"name": "idx_state_timestamp"}),

    ("pay_per_call_settlements", [("proof_hash", 1)], {"unique": True, "name": "idx_proof_hash_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message). Production needs explicit confirmation."""
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("CREDIT_ENGINE_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDIT_ENGINE_INIT_CONFIRM=YES\n"
                f"Current value: CREDIT_ENGINE_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False,
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.credit_engine_meta.update_one(
        {"_id": "credit_engine_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True,
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def ensure_schema(db, dry_run: bool = False) -> List[str]:
    """Create collections, indexes and the version stamp. Returns the log lines."""
    lines = ["=== Collections ==="]
    for collection_name in REQUIRED_COLLECTIONS:
        lines.append(await create_collection_if_not_exists(db, collection_name, dry_run))

    lines.append("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        lines.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    lines.append("=== Version Stamp ===")
    lines.append(await update_version_stamp(db, dry_run))
    return lines


async def run_init(dry_run: bool = False):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error(env_message)
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except PyMongoError as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    for line in await ensure_schema(db, dry_run):
        logger.info(line)

    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Credit engine DB init completed")
    logger.info("=" * 50)


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Credit Engine Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m credit_engine.db_init

    # Dry run (no changes)
    python -m credit_engine.db_init --dry-run

    # Production
    APP_ENV=production CREDIT_ENGINE_INIT_CONFIRM=YES python -m credit_engine.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()
    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
