from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes backing billing lookups and uniqueness rules."""
        try:
            # Plans
            await self.db.plans.create_index("plan_id", unique=True)
            try:
                await self.db.plans.create_index(
                    "external_plan_id",
                    unique=True,
                    partialFilterExpression={"external_plan_id": {"$type": "string"}},
                )
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            await self.db.plans.create_index([("status", 1), ("sort_order", 1)])
            await self.db.plans.create_index([("plan_type", 1), ("billing_cycle", 1)])

            # Subscriptions - one live (trialing/active) subscription per user
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            try:
                await self.db.subscriptions.create_index(
                    "external_subscription_id",
                    unique=True,
                    partialFilterExpression={"external_subscription_id": {"$type": "string"}},
                )
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            try:
                await self.db.subscriptions.create_index(
                    "user_id",
                    unique=True,
                    partialFilterExpression={"is_live": True},
                    name="one_live_subscription_per_user",
                )
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            await self.db.subscriptions.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.subscriptions.create_index([("status", 1), ("next_billing_date", 1)])
            await self.db.subscriptions.create_index("plan_id")
            await self.db.subscriptions.create_index("gateway_sync.status")

            # Payments - external_payment_id de-duplicates webhook and checkout deliveries
            await self.db.payments.create_index("payment_id", unique=True)
            try:
                await self.db.payments.create_index("external_payment_id", unique=True)
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            try:
                await self.db.payments.create_index("receipt.number", unique=True)
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            await self.db.payments.create_index("external_order_id")
            await self.db.payments.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.payments.create_index([("subscription_id", 1), ("created_at", -1)])
            await self.db.payments.create_index([("status", 1), ("created_at", -1)])

            # Webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.webhook_events.create_index("event_id", unique=True)
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")

            await self.db.user_billing.create_index("user_id", unique=True)

            await self.db.notifications.create_index([("user_id", 1), ("created_at", -1)])
            try:
                await self.db.notifications.create_index("idempotency_key", unique=True, sparse=True)
            except Exception as e:
                logger.warning(f"Index not created (may already exist with different options): {e}")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

