"""
Credit engine service process

Builds the database and shared-store clients once at startup, wires the
billing guard onto app.state for @billing_guarded routes, and schedules
ledger reconciliation.
"""
from fastapi import FastAPI
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

from database import check_db_connection, create_mongo_client, create_redis_client, get_database
from credit_engine.db_init import ensure_schema
from credit_engine.guard import create_billing_guard

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

RECONCILE_INTERVAL_MINUTES = 5

app = FastAPI(title="Credit Engine")
scheduler = AsyncIOScheduler()


async def scheduled_reconcile():
    """Finish ledger credits left pending by a crashed writer."""
    guard = app.state.billing_guard
    applied = await guard.ledger.reconcile_pending()
    if applied:
        logger.info(f"Reconciliation applied {applied} pending ledger entries")


@app.on_event("startup")
async def startup():
    client = create_mongo_client()
    db_ok, db_error = await check_db_connection(client)
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(f"Cannot start application - database connection failed: {db_error}")

    db = get_database(client)
    await ensure_schema(db)

    app.state.mongo_client = client
    app.state.redis_client = create_redis_client()
    app.state.billing_guard = create_billing_guard(db, app.state.redis_client)

    scheduler.add_job(
        scheduled_reconcile,
        "interval",
        minutes=RECONCILE_INTERVAL_MINUTES,
        id="ledger_reconcile",
        replace_existing=True
    )
    scheduler.start()
    logger.info(f"Ledger reconciliation scheduled every {RECONCILE_INTERVAL_MINUTES} minutes")


@app.on_event("shutdown")
async def shutdown():
    if scheduler.running:
        scheduler.shutdown()

    await app.state.billing_guard.gate.facilitator.close()
    if app.state.redis_client is not None:
        await app.state.redis_client.aclose()
    app.state.mongo_client.close()


@app.get("/api/health")
async def health():
    guard = app.state.billing_guard
    return {
        "status": "ok",
        "shared_store_degraded": getattr(guard.limiter.store, "degraded", False),
    }
