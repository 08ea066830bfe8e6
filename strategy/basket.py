import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from api.metrics import metrics
from orchestration.persistence import RecommendationStore
from strategy.basket_types import (
    BasketConstituent,
    BasketRebalance,
    BasketValidationError,
    ConstituentAction,
    PastConstituent,
    VersionConflict,
)
from strategy.recommendation_types import StrategyNotFound


logger = logging.getLogger(__name__)

# Float sums such as 33.34 + 33.33 + 33.33 must not fall outside an inclusive bound.
_EPSILON = 1e-9

ConstituentInput = Union[BasketConstituent, Dict[str, Any]]


def _coerce(item: ConstituentInput, index: int, errors: List[str]) -> Optional[BasketConstituent]:
    if isinstance(item, BasketConstituent):
        data = item.to_dict()
    elif isinstance(item, dict):
        data = item
    else:
        errors.append(f"constituent {index}: unsupported type {type(item).__name__}")
        return None

    symbol = str(data.get('symbol') or '').strip().upper()
    if not symbol:
        errors.append(f"constituent {index}: symbol is required")

    weight = data.get('weight_percent', data.get('weight'))
    try:
        weight = float(weight)
    except (TypeError, ValueError):
        errors.append(f"constituent {index} ({symbol or '?'}): weight must be a number")
        weight = None
    if weight is not None and weight <= 0:
        errors.append(f"constituent {index} ({symbol or '?'}): weight must be positive")

    try:
        action = ConstituentAction.parse(data.get('action'))
    except ValueError as exc:
        errors.append(f"constituent {index} ({symbol or '?'}): {exc}")
        action = None

    quantity = data.get('quantity')
    price = data.get('price_at_rebalance')
    if symbol and weight is not None and weight > 0 and action is not None:
        return BasketConstituent(
            symbol=symbol,
            weight_percent=weight,
            exchange=str(data.get('exchange') or 'NSE').strip().upper(),
            quantity=float(quantity) if quantity is not None else None,
            price_at_rebalance=float(price) if price is not None else None,
            action=action,
        )
    return None


def validate_constituents(items: Iterable[ConstituentInput], tolerance: float = 0.5) -> List[BasketConstituent]:
    """Return normalized constituents or raise ``BasketValidationError`` listing every problem."""
    items = list(items or [])
    if not items:
        raise BasketValidationError(["a rebalance needs at least one constituent"])

    errors: List[str] = []
    constituents: List[BasketConstituent] = []
    seen = set()
    for index, item in enumerate(items):
        constituent = _coerce(item, index, errors)
        if constituent is None:
            continue
        key = (constituent.exchange, constituent.symbol)
        if key in seen:
            errors.append(f"duplicate constituent {constituent.exchange}:{constituent.symbol}")
        seen.add(key)
        constituents.append(constituent)

    if not errors:
        total = sum(c.weight_percent for c in constituents)
        if abs(total - 100.0) > tolerance + _EPSILON:
            errors.append(f"weights sum to {round(total, 4)}, expected 100 +/- {tolerance}")

    if errors:
        raise BasketValidationError(errors)
    return constituents


class BasketVersioner:
    def __init__(
        self,
        store: RecommendationStore,
        tolerance: float = 0.5,
        max_retries: int = 3,
        clock=time.time,
    ):
        self.store = store
        self.tolerance = tolerance
        self.max_retries = max(1, int(max_retries))
        self.clock = clock

    async def submit_rebalance(
        self,
        strategy_id: str,
        constituents: Iterable[ConstituentInput],
        notes: Optional[str] = None,
    ) -> BasketRebalance:
        if await self.store.get_strategy(strategy_id) is None:
            metrics.record_basket_rebalance(False)
            raise StrategyNotFound(f"Strategy {strategy_id} not found")
        try:
            validated = validate_constituents(constituents, self.tolerance)
        except BasketValidationError as exc:
            metrics.record_basket_rebalance(False)
            logger.info("Rejected rebalance for %s: %s", strategy_id, exc)
            raise

        last_conflict: Optional[VersionConflict] = None
        for attempt in range(self.max_retries):
            version = await self.store.latest_basket_version(strategy_id) + 1
            rebalance = BasketRebalance(
                strategy_id=strategy_id,
                version=version,
                constituents=tuple(validated),
                notes=notes,
                effective_at=self.clock(),
            )
            try:
                stored = await self.store.insert_rebalance(rebalance)
            except VersionConflict as exc:
                last_conflict = exc
                logger.warning(
                    "Version %d of basket %s taken concurrently (attempt %d/%d)",
                    version,
                    strategy_id,
                    attempt + 1,
                    self.max_retries,
                )
                continue
            metrics.record_basket_rebalance(True)
            logger.info(
                "Basket %s rebalanced to version %d with %d constituents",
                strategy_id,
                stored.version,
                len(stored.constituents),
            )
            return stored

        metrics.record_basket_rebalance(False)
        raise last_conflict

    async def current_composition(self, strategy_id: str) -> Optional[BasketRebalance]:
        history = await self.store.list_rebalances(strategy_id)
        return history[-1] if history else None

    async def history(self, strategy_id: str) -> List[BasketRebalance]:
        """All versions, newest first."""
        return list(reversed(await self.store.list_rebalances(strategy_id)))

    async def past_recommendations(self, strategy_id: str) -> List[PastConstituent]:
        """Holdings present in the previous version and dropped by the latest one."""
        history = await self.store.list_rebalances(strategy_id)
        if len(history) < 2:
            return []
        latest, previous = history[-1], history[-2]
        current = set(latest.symbols())

        past: List[PastConstituent] = []
        for constituent in previous.constituents:
            if constituent.symbol in current:
                continue
            added_in = previous.version
            for older in reversed(history[:-2]):
                if constituent.symbol not in older.symbols():
                    break
                added_in = older.version
            past.append(PastConstituent(constituent, added_in, latest.version))
        return past
