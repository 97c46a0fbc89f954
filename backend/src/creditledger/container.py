"""Application container: builds and owns the long-lived service objects."""
import structlog
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from creditledger.adapters.interfaces import MeteringProvider, PaymentProvider
from creditledger.adapters.stripe_adapter import StripeAdapter
from creditledger.config import Settings
from creditledger.database import create_engine, create_session_factory
from creditledger.services.auto_top_up import AutoTopUpService
from creditledger.services.credit_grant_service import CreditGrantService
from creditledger.services.credit_ledger import CreditLedger
from creditledger.services.credits_sync import CreditsSyncService
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.meter_event_worker import MeterEventWorker, ProviderDeliveryHandler
from creditledger.services.usage_aggregator import UsageAggregator
from creditledger.services.usage_reporting import UsageReportingService

logger = structlog.get_logger(__name__)


class Container:
    """
    Wires settings, database, providers and services together.

    Providers and the engine can be injected (tests pass fakes and an SQLite
    engine); by default Stripe backs both provider interfaces.
    """

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine | None = None,
        metering: MeteringProvider | None = None,
        payments: PaymentProvider | None = None,
        redis: aioredis.Redis | None = None,
    ):
        self.settings = settings
        self.engine = engine or create_engine(settings)
        self.session_factory = create_session_factory(self.engine)

        stripe_adapter = None
        if metering is None or payments is None:
            stripe_adapter = StripeAdapter(settings)
        self.metering = metering or stripe_adapter
        self.payments = payments or stripe_adapter

        self.redis = redis or aioredis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)

        self.aggregator = UsageAggregator()
        self.ledger = CreditLedger(self.session_factory, settings)
        self.grants = CreditGrantService(self.ledger)
        self.queue = MeterEventQueue(self.session_factory, settings)
        self.usage_reporting = UsageReportingService(self.session_factory, self.queue, self.aggregator, settings)
        self.credits_sync = CreditsSyncService(self.session_factory, self.queue, self.metering, self.aggregator, settings)
        self.auto_top_up = AutoTopUpService(self.session_factory, self.ledger, self.grants, self.payments, settings)

        self.meter_worker: MeterEventWorker | None = None

    def create_meter_worker(self, rate_limit: int | None = None) -> MeterEventWorker:
        """Create the meter event worker; it is stopped on shutdown."""
        self.meter_worker = MeterEventWorker(
            self.queue,
            ProviderDeliveryHandler(self.metering),
            self.redis,
            self.settings,
            rate_limit=rate_limit,
        )
        return self.meter_worker

    async def startup(self) -> None:
        logger.info(
            "container_starting",
            env=self.settings.app_env,
            live_mode=self.settings.is_live_mode,
            meter_rate_limit=self.settings.meter_rate_limit,
        )
        # Jobs left active by a crashed worker become claimable again
        await self.queue.recover_stale_active()

    async def shutdown(self) -> None:
        if self.meter_worker is not None and self.meter_worker.is_alive:
            await self.meter_worker.shutdown()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("container_stopped")
