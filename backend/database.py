from motor.motor_asyncio import AsyncIOMotorClient
import logging
from contextlib import asynccontextmanager

from config import get_settings

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        settings = get_settings()
        try:
            # tz_aware so lease/backoff comparisons against UTC datetimes hold
            self.client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
            self.db = self.client[settings.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {settings.db_name}")

            await create_indexes(self.db)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db


async def create_indexes(db):
    """Create MongoDB indexes. Unique indexes carry the idempotency invariants."""
    # Plan catalog
    await db.plans.create_index("plan_id", unique=True)
    await db.plans.create_index("status")
    await db.snapshot_templates.create_index("plan_id", unique=True)

    # Provisioning jobs - one job per checkout event
    await db.provisioning_jobs.create_index("job_id", unique=True)
    await db.provisioning_jobs.create_index("event_id", unique=True)
    await db.provisioning_jobs.create_index([("state", 1), ("next_attempt_at", 1)])
    await db.provisioning_jobs.create_index("locked_until")
    await db.provisioning_jobs.create_index([("created_at", -1)])

    # Audit - strictly ordered per job
    await db.provisioning_audit.create_index([("job_id", 1), ("seq", 1)], unique=True)
    await db.provisioning_audit.create_index("timestamp")

    # Tenants written on success
    await db.tenants.create_index("job_id", unique=True)
    await db.tenants.create_index("tenant_id")
    await db.tenants.create_index("plan_id")

    # Stripe webhook delivery ledger
    await db.stripe_events.create_index("event_id", unique=True)
    logger.info("Provisioning indexes created")


# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.provisioning_jobs.find_one(...)
    """
    settings = get_settings()
    client = None
    try:
        client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
        db = client[settings.db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {settings.db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
