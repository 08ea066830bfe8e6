import logging
import time
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics
from orchestration.persistence import RecommendationStore
from strategy.pricing import MarketPriceResolver
from strategy.recommendation_types import (
    Direction,
    InvalidRecommendation,
    InvalidTransition,
    LifecycleError,
    MissingRationale,
    NotOwner,
    PriceTier,
    PriceUnavailableError,
    PublishMode,
    Recommendation,
    RecommendationKind,
    RecommendationNotFound,
    Status,
    Strategy,
    StrategyNotFound,
    gain_percent,
)


logger = logging.getLogger(__name__)

_UNSET = object()


def _parse_mode(value: Any) -> PublishMode:
    if isinstance(value, PublishMode):
        return value
    try:
        return PublishMode(str(value or 'draft').strip().lower())
    except ValueError as exc:
        raise InvalidRecommendation(f"Unknown publish mode '{value}'") from exc


def _optional_price(name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRecommendation(f"{name} must be a number") from exc
    if price <= 0:
        raise InvalidRecommendation(f"{name} must be positive")
    return price


class RecommendationLifecycle:
    """Publish-gated state machine over advisor Calls and Positions.

    Every mutation goes through ``store.update_recommendation`` with the status
    the caller observed, so a concurrent close turns the loser's write into an
    ``InvalidTransition`` instead of a second exit.
    """

    def __init__(
        self,
        store: RecommendationStore,
        pricer: Optional[MarketPriceResolver] = None,
        notifier=None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.pricer = pricer
        self.notifier = notifier
        self.clock = clock

    # -- creation -----------------------------------------------------------

    async def create_call(
        self,
        strategy_id: str,
        name: str,
        direction: Any = Direction.BUY,
        entry_price: Optional[float] = None,
        entry_range_low: Optional[float] = None,
        entry_range_high: Optional[float] = None,
        target: Optional[float] = None,
        stop_loss: Optional[float] = None,
        rationale: Optional[str] = None,
        publish_mode: Any = PublishMode.DRAFT,
        advisor_id: Optional[str] = None,
    ) -> Recommendation:
        rec = Recommendation(
            strategy_id=strategy_id,
            kind=RecommendationKind.CALL,
            name=(name or '').strip(),
            direction=self._parse_direction(direction),
            entry_price=_optional_price('entry_price', entry_price),
            entry_range_low=_optional_price('entry_range_low', entry_range_low),
            entry_range_high=_optional_price('entry_range_high', entry_range_high),
            target=_optional_price('target', target),
            stop_loss=_optional_price('stop_loss', stop_loss),
            rationale=rationale,
            publish_mode=_parse_mode(publish_mode),
        )
        return await self._create(rec, advisor_id)

    async def create_position(
        self,
        strategy_id: str,
        symbol: str,
        direction: Any = Direction.BUY,
        entry_price: Optional[float] = None,
        target: Optional[float] = None,
        stop_loss: Optional[float] = None,
        segment: Optional[str] = None,
        expiry: Optional[str] = None,
        strike_price: Optional[float] = None,
        call_put: Optional[str] = None,
        lots: Optional[int] = None,
        rationale: Optional[str] = None,
        publish_mode: Any = PublishMode.DRAFT,
        advisor_id: Optional[str] = None,
    ) -> Recommendation:
        if lots is not None and int(lots) <= 0:
            raise InvalidRecommendation("lots must be positive")
        rec = Recommendation(
            strategy_id=strategy_id,
            kind=RecommendationKind.POSITION,
            name=(symbol or '').strip(),
            direction=self._parse_direction(direction),
            entry_price=_optional_price('entry_price', entry_price),
            target=_optional_price('target', target),
            stop_loss=_optional_price('stop_loss', stop_loss),
            segment=segment,
            expiry=expiry,
            strike_price=_optional_price('strike_price', strike_price),
            call_put=call_put,
            lots=int(lots) if lots is not None else None,
            rationale=rationale,
            publish_mode=_parse_mode(publish_mode),
        )
        return await self._create(rec, advisor_id)

    async def _create(self, rec: Recommendation, advisor_id: Optional[str]) -> Recommendation:
        strategy = await self._strategy(rec.strategy_id)
        self._authorize(strategy, advisor_id)
        if not rec.name:
            self._reject(InvalidRecommendation("Instrument name is required"))
        if rec.publish_mode is not PublishMode.DRAFT and not rec.has_rationale:
            self._reject(MissingRationale(
                f"A rationale is required to create a {rec.publish_mode.value} {rec.kind.value}"
            ))
        if rec.is_live:
            rec.published_at = self.clock()
        rec.created_at = self.clock()

        created = await self.store.create_recommendation(rec)
        metrics.record_transition('create')
        logger.info(
            "Created %s %s %s (%s) in strategy %s",
            created.kind.value,
            created.direction.value,
            created.name,
            created.publish_mode.value,
            created.strategy_id,
        )
        if created.is_live:
            await self._notify_published(created)
        return created

    # -- transitions --------------------------------------------------------

    async def publish(self, recommendation_id: str, advisor_id: Optional[str] = None) -> Recommendation:
        rec = await self._load(recommendation_id)
        self._authorize(await self._strategy(rec.strategy_id), advisor_id)
        if not rec.is_active:
            self._reject(InvalidTransition("Closed recommendations cannot be published", recommendation_id))
        if rec.is_live:
            self._reject(InvalidTransition("Recommendation is already live", recommendation_id))
        if not rec.has_rationale:
            self._reject(MissingRationale("A rationale is required before going live", recommendation_id))

        updated = await self.store.update_recommendation(
            recommendation_id,
            {'publish_mode': PublishMode.LIVE, 'published_at': self.clock()},
            expected_status=Status.ACTIVE,
        )
        if updated is None:
            self._reject(InvalidTransition("Recommendation was closed concurrently", recommendation_id))
        metrics.record_transition('publish')
        logger.info("Published %s (%s)", updated.name, recommendation_id)
        await self._notify_published(updated)
        return updated

    async def edit(
        self,
        recommendation_id: str,
        target: Any = _UNSET,
        stop_loss: Any = _UNSET,
        rationale: Any = _UNSET,
        advisor_id: Optional[str] = None,
    ) -> Recommendation:
        rec = await self._load(recommendation_id)
        self._authorize(await self._strategy(rec.strategy_id), advisor_id)
        if not rec.is_active:
            self._reject(InvalidTransition("Closed recommendations cannot be edited", recommendation_id))

        changes: Dict[str, Any] = {}
        if target is not _UNSET:
            value = _optional_price('target', target)
            if value != rec.target:
                changes['target'] = value
        if stop_loss is not _UNSET:
            value = _optional_price('stop_loss', stop_loss)
            if value != rec.stop_loss:
                changes['stop_loss'] = value
        if rationale is not _UNSET and rationale != rec.rationale:
            changes['rationale'] = rationale

        if not changes:
            return rec

        updated = await self.store.update_recommendation(recommendation_id, changes, expected_status=Status.ACTIVE)
        if updated is None:
            self._reject(InvalidTransition("Recommendation was closed concurrently", recommendation_id))
        metrics.record_transition('edit')

        levels = {k: v for k, v in changes.items() if k in ('target', 'stop_loss')}
        if updated.is_live and levels:
            await self._notify(
                f"{updated.name} updated",
                ", ".join(f"{k.replace('_', ' ')} now {v}" for k, v in levels.items()),
                updated,
                {'event': 'updated', 'changes': levels},
            )
        return updated

    async def close(
        self,
        recommendation_id: str,
        exit_price: Optional[float] = None,
        at_market: bool = False,
        advisor_id: Optional[str] = None,
        tier: Optional[PriceTier] = None,
    ) -> Recommendation:
        """Close an Active recommendation at an explicit price or at market.

        ``tier`` labels where an explicit price came from; the scheduler passes
        the fallback tier it used. Manual closes default to ``PriceTier.MANUAL``.
        """
        rec = await self._load(recommendation_id)
        strategy = await self._strategy(rec.strategy_id)
        self._authorize(strategy, advisor_id)
        if not rec.is_active:
            self._reject(InvalidTransition("Recommendation is already closed", recommendation_id))

        if exit_price is not None:
            tier = tier or PriceTier.MANUAL
            try:
                price = float(exit_price)
            except (TypeError, ValueError):
                self._reject(InvalidRecommendation("exit_price must be a number", recommendation_id))
            if price < 0 or (price == 0 and tier is PriceTier.MANUAL):
                self._reject(InvalidRecommendation("exit_price must be positive", recommendation_id))
        elif at_market:
            resolved = await self.pricer.live_price(rec, strategy.type) if self.pricer else None
            if resolved is None:
                self._reject(PriceUnavailableError(
                    f"No market price available for {rec.name}", recommendation_id
                ))
            price, tier = resolved.price, resolved.tier
        else:
            self._reject(InvalidRecommendation("Provide exit_price or request an at-market close", recommendation_id))

        changes = {
            'status': Status.CLOSED,
            'exit_price': price,
            'exit_at': self.clock(),
            'gain_percent': gain_percent(rec.direction, rec.effective_entry, price),
            'exit_price_tier': tier,
        }
        updated = await self.store.update_recommendation(recommendation_id, changes, expected_status=Status.ACTIVE)
        if updated is None:
            self._reject(InvalidTransition("Recommendation was closed concurrently", recommendation_id))

        metrics.record_transition('close')
        logger.info(
            "Closed %s %s at %.4f (%s), gain %.2f%%",
            updated.direction.value,
            updated.name,
            price,
            tier.value,
            updated.gain_percent,
        )
        await self._notify(
            f"{updated.name} closed",
            f"Exited at {price} ({updated.gain_percent:+.2f}%)",
            updated,
            {
                'event': 'closed',
                'exit_price': price,
                'gain_percent': updated.gain_percent,
                'price_tier': tier.value,
            },
        )
        return updated

    async def correct_exit_price(
        self,
        recommendation_id: str,
        exit_price: float,
        advisor_id: Optional[str] = None,
    ) -> Recommendation:
        rec = await self._load(recommendation_id)
        self._authorize(await self._strategy(rec.strategy_id), advisor_id)
        if rec.is_active:
            self._reject(InvalidTransition("Only closed recommendations can be corrected", recommendation_id))
        price = _optional_price('exit_price', exit_price)
        if price is None:
            self._reject(InvalidRecommendation("exit_price is required", recommendation_id))

        changes: Dict[str, Any] = {
            'exit_price': price,
            'gain_percent': gain_percent(rec.direction, rec.effective_entry, price),
            'exit_price_tier': PriceTier.MANUAL,
        }
        if rec.exit_at is None:
            changes['exit_at'] = self.clock()
        updated = await self.store.update_recommendation(recommendation_id, changes, expected_status=Status.CLOSED)
        if updated is None:
            self._reject(InvalidTransition("Recommendation is no longer closed", recommendation_id))
        metrics.record_transition('correct_exit')
        logger.info(
            "Corrected exit of %s: %s -> %s (gain %.2f%%)",
            recommendation_id,
            rec.exit_price,
            price,
            updated.gain_percent,
        )
        return updated

    # -- reads --------------------------------------------------------------

    async def get(self, recommendation_id: str) -> Recommendation:
        return await self._load(recommendation_id)

    async def list_for_subscribers(self, strategy_id: str) -> List[Recommendation]:
        rows = await self.store.list_recommendations(strategy_id)
        return [rec for rec in rows if rec.visible_to_subscribers()]

    # -- helpers ------------------------------------------------------------

    def _parse_direction(self, value: Any) -> Direction:
        try:
            return Direction.parse(value)
        except ValueError as exc:
            raise InvalidRecommendation(str(exc)) from exc

    def _reject(self, error: LifecycleError) -> None:
        metrics.record_rejection(error.reason)
        logger.debug("Rejected (%s): %s", error.reason, error)
        raise error

    async def _load(self, recommendation_id: str) -> Recommendation:
        rec = await self.store.get_recommendation(recommendation_id)
        if rec is None:
            self._reject(RecommendationNotFound(f"Recommendation {recommendation_id} not found", recommendation_id))
        return rec

    async def _strategy(self, strategy_id: str) -> Strategy:
        strategy = await self.store.get_strategy(strategy_id)
        if strategy is None:
            self._reject(StrategyNotFound(f"Strategy {strategy_id} not found"))
        return strategy

    def _authorize(self, strategy: Strategy, advisor_id: Optional[str]) -> None:
        # None is the system actor (scheduler, operator tooling).
        if advisor_id is not None and advisor_id != strategy.advisor_id:
            self._reject(NotOwner(f"Strategy {strategy.strategy_id} belongs to another advisor"))

    async def _notify_published(self, rec: Recommendation) -> None:
        entry = rec.effective_entry
        body = f"{rec.direction.value} {rec.name}"
        if entry is not None:
            body += f" @ {entry}"
        await self._notify(
            f"New {rec.kind.value}: {rec.name}",
            body,
            rec,
            {'event': 'published', 'direction': rec.direction.value},
        )

    async def _notify(self, title: str, body: str, rec: Recommendation, data: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(
                title,
                body,
                strategy_id=rec.strategy_id,
                item_id=rec.recommendation_id,
                data=data,
            )
        except Exception as e:
            logger.error("Notification for %s failed: %s", rec.recommendation_id, e)
