"""
Database connection and configuration

Environment Validation
Fails fast with clear error messages if required variables are missing.
Clients are built explicitly at process start and passed to the credit
engine; nothing here connects on import.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from pymongo.errors import PyMongoError
import redis.asyncio as redis_asyncio

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def validate_required_env_vars():
    """
    Validate all critical environment variables exist before the app starts.
    Raises ValueError with clear error message if required variables are missing.
    """
    required_vars = {
        "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
        "DB_NAME": "Database name (e.g., credit_engine)"
    }

    missing = []
    for var, description in required_vars.items():
        if not os.environ.get(var):
            missing.append(f"  - {var}: {description}")

    if missing:
        error_msg = (
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            "=" * 60 + "\n"
            "The following environment variables must be set:\n\n"
            + "\n".join(missing) + "\n\n"
            "Please check your .env file or environment configuration.\n"
            + "=" * 60
        )
        raise ValueError(error_msg)


def create_mongo_client() -> AsyncIOMotorClient:
    """MongoDB client with connection pool configuration."""
    validate_required_env_vars()
    try:
        return AsyncIOMotorClient(
            os.environ['MONGO_URL'],
            maxPoolSize=50,
            minPoolSize=10,
            connectTimeoutMS=5000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True
        )
    except (PyMongoError, ValueError) as e:
        raise ValueError(f"Failed to create MongoDB client: {e}")


def get_database(client: AsyncIOMotorClient):
    return client[os.environ['DB_NAME']]


def create_redis_client() -> Optional[redis_asyncio.Redis]:
    """Redis client from REDIS_URL, or None to run on the local fallback store."""
    url = os.environ.get("REDIS_URL")
    if not url:
        logger.warning("REDIS_URL not set; rate limits and entitlement cache are per-instance")
        return None
    return redis_asyncio.from_url(url, socket_timeout=1.0, socket_connect_timeout=1.0)


async def check_db_connection(client: AsyncIOMotorClient) -> Tuple[bool, Optional[str]]:
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')

        db_name = os.environ['DB_NAME']
        await client[db_name].list_collection_names()

        logger.info(f"Database connected successfully: {db_name}")
        return True, None

    except PyMongoError as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
