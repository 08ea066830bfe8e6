import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, time as dtime
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from api.metrics import metrics
from monitoring.async_utils import wait_or_stop
from monitoring.square_off_auditor import SquareOffAuditor
from orchestration.persistence import RecommendationStore
from strategy.lifecycle import RecommendationLifecycle
from strategy.pricing import MarketPriceResolver
from strategy.recommendation_types import InvalidTransition, PriceTier, Status, Strategy


logger = logging.getLogger(__name__)


@dataclass
class SquareOffResult:
    recommendation_id: str
    strategy_id: str
    name: str
    exit_price: float
    gain_percent: float
    tier: PriceTier


class AutoSquareOffScheduler:
    """Force-closes intraday recommendations during the end-of-day cutover window.

    The loop wakes every ``interval_s`` seconds and does nothing outside the
    window. Inside it, every Active Call and Position of an intraday strategy is
    closed through the lifecycle, so the conditional update guarantees an item
    is never closed twice even if an advisor closes it at the same moment.
    """

    def __init__(
        self,
        store: RecommendationStore,
        lifecycle: RecommendationLifecycle,
        pricer: MarketPriceResolver,
        auditor: Optional[SquareOffAuditor] = None,
        interval_s: float = 60.0,
        window_start: dtime = dtime(15, 25),
        window_end: dtime = dtime(15, 30),
        timezone: str = 'Asia/Kolkata',
        intraday_horizon: str = 'Intraday',
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.pricer = pricer
        self.auditor = auditor
        self.interval_s = interval_s
        self.window_start = window_start
        self.window_end = window_end
        self.tz = ZoneInfo(timezone)
        self.intraday_horizon = intraday_horizon
        self.clock = clock
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=self.tz)

    def in_window(self, now: Optional[datetime] = None) -> bool:
        now = now or self.now()
        if now.tzinfo is not None:
            now = now.astimezone(self.tz)
        current = now.time().replace(second=0, microsecond=0)
        return self.window_start <= current <= self.window_end

    async def tick(self, now: Optional[datetime] = None) -> List[SquareOffResult]:
        in_window = self.in_window(now)
        metrics.record_scheduler_tick(in_window)
        if not in_window:
            return []

        results: List[SquareOffResult] = []
        for strategy in await self.store.list_strategies():
            if not strategy.is_intraday(self.intraday_horizon):
                continue
            try:
                results.extend(await self._square_off_strategy(strategy))
            except Exception as e:
                metrics.record_scheduler_error()
                logger.error("Square-off of strategy %s failed: %s", strategy.strategy_id, e)
        if results:
            logger.info("Auto square-off closed %d recommendations", len(results))
        return results

    async def _square_off_strategy(self, strategy: Strategy) -> List[SquareOffResult]:
        results: List[SquareOffResult] = []
        active = await self.store.list_recommendations(strategy.strategy_id, status=Status.ACTIVE)
        for rec in active:
            try:
                resolved = await self.pricer.square_off_price(rec, strategy.type)
                closed = await self.lifecycle.close(
                    rec.recommendation_id,
                    exit_price=resolved.price,
                    tier=resolved.tier,
                )
            except InvalidTransition:
                logger.info("Recommendation %s was closed concurrently; skipping", rec.recommendation_id)
                continue
            except Exception as e:
                metrics.record_scheduler_error()
                logger.error("Square-off of %s (%s) failed: %s", rec.recommendation_id, rec.name, e)
                if self.auditor:
                    self.auditor.record_failure(rec.recommendation_id, strategy.strategy_id, e)
                continue

            metrics.record_square_off(resolved.tier.value)
            if self.auditor:
                self.auditor.record_close(closed, resolved.tier, strategy.name)
            results.append(
                SquareOffResult(
                    recommendation_id=closed.recommendation_id,
                    strategy_id=strategy.strategy_id,
                    name=closed.name,
                    exit_price=closed.exit_price,
                    gain_percent=closed.gain_percent,
                    tier=resolved.tier,
                )
            )
        return results

    async def run(self):
        self._stop_event = asyncio.Event()
        self.running = True
        logger.info(
            "Auto square-off scheduler running every %ss, window %s-%s %s",
            self.interval_s,
            self.window_start.strftime('%H:%M'),
            self.window_end.strftime('%H:%M'),
            self.tz.key,
        )
        try:
            while self.running:
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    metrics.record_scheduler_error()
                    logger.error("Scheduler tick failed: %s", e)

                try:
                    if await wait_or_stop(self._stop_event, self.interval_s):
                        break
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    async def start(self):
        await self.run()

    async def stop(self):
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
