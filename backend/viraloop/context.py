"""
Process-wide application context.

Everything with a connection or a lifecycle (database engine, Redis pool,
Stripe client) is constructed here explicitly and handed to the services
that need it. Nothing is cached in module globals.

Lifecycle:

    ctx = AppContext.from_config(config)
    await ctx.initialize()   # open pools, verify connections, create schema if enabled
    ...
    await ctx.close()        # stop the scheduler, dispose pools

FastAPI stores the context on ``app.state.ctx``; standalone processes hold
it themselves.
"""

from typing import Optional

from viraloop.services.db import Database
from viraloop.services.redis import RedisClient
from viraloop.utils.cache import Cache
from viraloop.utils.config import Configuration, EnvMode
from viraloop.utils.logger import logger
from viraloop.billing.credits.history import CreditHistoryService
from viraloop.billing.credits.manager import CreditManager
from viraloop.billing.credits.spin import WheelService
from viraloop.billing.credits.usage import UsageLimiter
from viraloop.billing.external.stripe import StripeAPIWrapper, WebhookService
from viraloop.billing.jobs.recurring_credits import RecurringCreditsJob
from viraloop.billing.jobs.scheduler import DailyJobScheduler
from viraloop.billing.repo.tables import metadata
from viraloop.billing.repo.webhook_events import WebhookLock


class AppContext:
    def __init__(
        self,
        config: Configuration,
        db: Database,
        redis: Optional[RedisClient] = None,
        stripe_api=None,
    ):
        self.config = config
        self.db = db
        self.redis = redis
        self.stripe_api = stripe_api or StripeAPIWrapper(config.STRIPE_SECRET_KEY)
        self.cache = Cache()

        self.credit_manager = CreditManager(db, self.cache)
        self.history = CreditHistoryService(db, self.cache)
        self.usage = UsageLimiter(db)
        self.wheel = WheelService(db, self.credit_manager)
        self.webhooks = WebhookService(
            db,
            self.credit_manager,
            self.stripe_api,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            domain=config.WEBHOOK_DOMAIN,
            allow_unsigned=config.ENV_MODE == EnvMode.LOCAL,
            lock=WebhookLock(db),
        )
        self.recurring_job = RecurringCreditsJob(db, self.credit_manager)
        self.scheduler = DailyJobScheduler(
            RecurringCreditsJob.name,
            self.recurring_job.run,
            hour_utc=config.RECURRING_CREDITS_HOUR_UTC,
            startup_delay=config.STARTUP_DELAY_SECONDS,
        )
        self._initialized = False

    @classmethod
    def from_config(cls, config: Configuration) -> "AppContext":
        redis = RedisClient(config.REDIS_URL) if config.REDIS_URL else None
        return cls(config, Database(config.DATABASE_URL), redis=redis)

    async def initialize(self) -> None:
        if self._initialized:
            return

        await self.db.initialize()
        if self.config.DB_AUTO_CREATE:
            await self.db.create_schema(metadata)

        if self.redis is not None:
            try:
                await self.redis.initialize()
                # Services share this Cache instance
                self.cache.attach(self.redis.client)
            except Exception as e:
                logger.error(f"Failed to initialize Redis, continuing without cache: {e}")

        self._initialized = True
        logger.info(f"Application context initialized ({self.config.ENV_MODE.value})")

    def start_scheduler(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.redis is not None:
            await self.redis.close()
        await self.db.close()
        self._initialized = False
        logger.info("Application context closed")
