import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ConstituentAction(Enum):
    BUY = "Buy"
    SELL = "Sell"
    HOLD = "Hold"

    @classmethod
    def parse(cls, value: Any) -> 'ConstituentAction':
        if isinstance(value, ConstituentAction):
            return value
        text = str(value or "Buy").strip().lower()
        for action in cls:
            if action.value.lower() == text:
                return action
        raise ValueError(f"Unknown constituent action '{value}'")


class BasketValidationError(Exception):
    """A rebalance submission was rejected before anything was written."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class VersionConflict(Exception):
    """Another rebalance claimed the same version number first."""


@dataclass(frozen=True)
class BasketConstituent:
    symbol: str
    weight_percent: float
    exchange: str = "NSE"
    quantity: Optional[float] = None
    price_at_rebalance: Optional[float] = None
    action: ConstituentAction = ConstituentAction.BUY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'exchange': self.exchange,
            'weight_percent': self.weight_percent,
            'quantity': self.quantity,
            'price_at_rebalance': self.price_at_rebalance,
            'action': self.action.value,
        }


@dataclass(frozen=True)
class BasketRebalance:
    strategy_id: str
    version: int
    constituents: tuple
    notes: Optional[str] = None
    effective_at: float = field(default_factory=time.time)
    rebalance_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def symbols(self) -> List[str]:
        return [c.symbol for c in self.constituents]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.rebalance_id,
            'strategy_id': self.strategy_id,
            'version': self.version,
            'effective_at': self.effective_at,
            'notes': self.notes,
            'constituents': [c.to_dict() for c in self.constituents],
        }


@dataclass(frozen=True)
class PastConstituent:
    """A holding dropped by the latest rebalance."""

    constituent: BasketConstituent
    added_in_version: int
    removed_in_version: int

    def to_dict(self) -> Dict[str, Any]:
        data = self.constituent.to_dict()
        data['added_in_version'] = self.added_in_version
        data['removed_in_version'] = self.removed_in_version
        return data
