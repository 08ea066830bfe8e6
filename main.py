import asyncio
import logging
import time
from typing import Any, Callable, Optional

from api.metrics import start_metrics_server
from api.notifications import NotificationWebhook
from config import config
from config.utils import get_config_section, parse_clock
from ingest.credentials import CredentialManager
from ingest.groww_rest import GrowwRESTClient
from ingest.quote_cache import PriceCache
from ingest.quote_gateway import DEFAULT_INSTRUMENTS_URL, QuoteGateway
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.square_off_auditor import SquareOffAuditor
from orchestration.persistence import InMemoryStore, RecommendationStore
from orchestration.scheduler import AutoSquareOffScheduler
from strategy.basket import BasketVersioner
from strategy.lifecycle import RecommendationLifecycle
from strategy.pricing import MarketPriceResolver


logger = logging.getLogger(__name__)


def build_store(storage_cfg: dict, database_cfg: dict) -> RecommendationStore:
    backend = str(storage_cfg.get('backend') or 'memory').lower()
    if backend == 'memory':
        return InMemoryStore()
    if backend in ('postgres', 'postgresql'):
        from orchestration.pg_store import PostgresStore
        return PostgresStore(database_cfg)
    raise ValueError(f"Unknown storage backend '{backend}'")


class AdvisorySystem:
    """Wire the quote gateway, lifecycle engine, basket versioner, and square-off scheduler."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        store: Optional[RecommendationStore] = None,
        rest: Optional[GrowwRESTClient] = None,
        notifier=None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config_obj if config_obj is not None else config
        self.provider_cfg = get_config_section(self.config, 'provider')
        self.cache_cfg = get_config_section(self.config, 'cache')
        self.scheduler_cfg = get_config_section(self.config, 'scheduler')
        self.basket_cfg = get_config_section(self.config, 'basket')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        timezone = self.provider_cfg.get('timezone') or 'Asia/Kolkata'

        self.rest = rest or GrowwRESTClient(
            base_url=self.provider_cfg.get('base_url'),
            timeout_s=self.provider_cfg.get('request_timeout_s'),
        )
        self.cache = PriceCache(ttl_s=float(self.cache_cfg.get('quote_ttl_s') or 5.0))
        self.credentials = CredentialManager(
            self.rest,
            api_key=self.provider_cfg.get('api_key'),
            api_secret=self.provider_cfg.get('api_secret'),
            timezone=timezone,
            rotation_hour=int(self.provider_cfg.get('token_rotation_hour') or 6),
            expiry_margin_s=float(self.provider_cfg.get('token_expiry_margin_s') or 60),
            clock=clock,
        )
        # Quotes fetched under the previous token must not outlive an operator override.
        self.credentials.on_manual_token(self.cache.clear)
        self.gateway = QuoteGateway(
            self.rest,
            self.credentials,
            self.cache,
            batch_size=int(self.provider_cfg.get('bulk_batch_size') or 50),
            max_parallel_batches=int(self.provider_cfg.get('max_parallel_batches') or 4),
            single_quote_parallelism=int(self.provider_cfg.get('single_quote_parallelism') or 5),
            instruments_url=self.provider_cfg.get('instruments_url') or DEFAULT_INSTRUMENTS_URL,
            instruments_cache_ttl_s=float(self.provider_cfg.get('instruments_cache_ttl_s') or 21600),
            timezone=timezone,
            clock=clock,
        )

        self.store = store or build_store(
            get_config_section(self.config, 'storage'),
            get_config_section(self.config, 'database'),
        )
        self.notifier = notifier or NotificationWebhook(self.monitoring_cfg.get('notification_webhook'))
        self.pricer = MarketPriceResolver(self.gateway)
        self.lifecycle = RecommendationLifecycle(self.store, self.pricer, self.notifier, clock=clock)
        self.baskets = BasketVersioner(
            self.store,
            tolerance=float(self.basket_cfg.get('weight_tolerance', 0.5)),
            max_retries=int(self.basket_cfg.get('max_version_retries') or 3),
            clock=clock,
        )
        self.auditor = SquareOffAuditor(self.monitoring_cfg.get('square_off_audit_log'))
        self.scheduler = AutoSquareOffScheduler(
            self.store,
            self.lifecycle,
            self.pricer,
            auditor=self.auditor,
            interval_s=float(self.scheduler_cfg.get('interval_s') or 60),
            window_start=parse_clock(self.scheduler_cfg.get('window_start') or '15:25'),
            window_end=parse_clock(self.scheduler_cfg.get('window_end') or '15:30'),
            timezone=timezone,
            intraday_horizon=self.scheduler_cfg.get('intraday_horizon') or 'Intraday',
            clock=clock,
        )
        self.running = False
        self._initialized = False

    async def initialize(self):
        if self._initialized:
            return
        await self.store.initialize()
        self._initialized = True

    async def start(self, serve_metrics: bool = True):
        self.running = True
        await self.initialize()

        if serve_metrics:
            start_metrics_server(int(self.monitoring_cfg.get('prometheus_port') or 9108))

        tasks = [asyncio.create_task(self.scheduler.start())]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        await self.scheduler.stop()
        await self.rest.close()
        await self.store.close()
        self._initialized = False


async def main():
    system = AdvisorySystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging(get_config_section(config, 'monitoring').get('log_level') or 'INFO')
    asyncio.run(main())
