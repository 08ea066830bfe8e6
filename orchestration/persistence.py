import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

from strategy.basket_types import BasketRebalance, VersionConflict
from strategy.recommendation_types import Recommendation, Status, Strategy


logger = logging.getLogger(__name__)


class RecommendationStore(ABC):
    """Persistence interface used by the lifecycle, scheduler, and basket versioner.

    ``update_recommendation`` is a conditional write: it only applies when the
    row currently has ``expected_status`` and returns None otherwise, which is
    how concurrent closers are serialized.
    """

    async def initialize(self) -> None:
        return

    async def close(self) -> None:
        return

    @abstractmethod
    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        ...

    @abstractmethod
    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        ...

    @abstractmethod
    async def list_strategies(self) -> List[Strategy]:
        ...

    @abstractmethod
    async def create_recommendation(self, recommendation: Recommendation) -> Recommendation:
        ...

    @abstractmethod
    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        ...

    @abstractmethod
    async def list_recommendations(
        self,
        strategy_id: str,
        status: Optional[Status] = None,
    ) -> List[Recommendation]:
        ...

    @abstractmethod
    async def update_recommendation(
        self,
        recommendation_id: str,
        changes: Dict[str, Any],
        expected_status: Status,
    ) -> Optional[Recommendation]:
        ...

    @abstractmethod
    async def latest_basket_version(self, strategy_id: str) -> int:
        ...

    @abstractmethod
    async def insert_rebalance(self, rebalance: BasketRebalance) -> BasketRebalance:
        ...

    @abstractmethod
    async def list_rebalances(self, strategy_id: str) -> List[BasketRebalance]:
        ...


class InMemoryStore(RecommendationStore):
    """Process-local store; every read returns a copy so callers cannot mutate rows."""

    def __init__(self):
        self.strategies: Dict[str, Strategy] = {}
        self.recommendations: Dict[str, Recommendation] = {}
        self.rebalances: Dict[str, Dict[int, BasketRebalance]] = {}

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        self.strategies[strategy.strategy_id] = replace(strategy)
        return replace(strategy)

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        strategy = self.strategies.get(strategy_id)
        return replace(strategy) if strategy else None

    async def list_strategies(self) -> List[Strategy]:
        return [replace(s) for s in self.strategies.values()]

    async def create_recommendation(self, recommendation: Recommendation) -> Recommendation:
        if recommendation.recommendation_id in self.recommendations:
            raise ValueError(f"Recommendation {recommendation.recommendation_id} already exists")
        self.recommendations[recommendation.recommendation_id] = replace(recommendation)
        return replace(recommendation)

    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        rec = self.recommendations.get(recommendation_id)
        return replace(rec) if rec else None

    async def list_recommendations(
        self,
        strategy_id: str,
        status: Optional[Status] = None,
    ) -> List[Recommendation]:
        rows = [
            replace(rec) for rec in self.recommendations.values()
            if rec.strategy_id == strategy_id and (status is None or rec.status is status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    async def update_recommendation(
        self,
        recommendation_id: str,
        changes: Dict[str, Any],
        expected_status: Status,
    ) -> Optional[Recommendation]:
        current = self.recommendations.get(recommendation_id)
        if current is None or current.status is not expected_status:
            return None
        updated = replace(current, **changes)
        self.recommendations[recommendation_id] = updated
        return replace(updated)

    async def latest_basket_version(self, strategy_id: str) -> int:
        versions = self.rebalances.get(strategy_id)
        return max(versions) if versions else 0

    async def insert_rebalance(self, rebalance: BasketRebalance) -> BasketRebalance:
        versions = self.rebalances.setdefault(rebalance.strategy_id, {})
        if rebalance.version in versions:
            raise VersionConflict(
                f"Basket {rebalance.strategy_id} already has version {rebalance.version}"
            )
        versions[rebalance.version] = rebalance
        return rebalance

    async def list_rebalances(self, strategy_id: str) -> List[BasketRebalance]:
        versions = self.rebalances.get(strategy_id, {})
        return [versions[v] for v in sorted(versions)]
