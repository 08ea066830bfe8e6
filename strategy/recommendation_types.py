import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from ingest.instruments import (
    Instrument,
    InstrumentKind,
    OptionContract,
    build_option_contract,
    parse_instrument_name,
)


class RecommendationKind(Enum):
    CALL = "call"
    POSITION = "position"


class Status(Enum):
    ACTIVE = "Active"
    CLOSED = "Closed"


class PublishMode(Enum):
    DRAFT = "draft"
    WATCHLIST = "watchlist"
    LIVE = "live"


class Direction(Enum):
    BUY = "Buy"
    SELL = "Sell"

    @classmethod
    def parse(cls, value: Any) -> 'Direction':
        if isinstance(value, Direction):
            return value
        text = str(value or "Buy").strip().lower()
        if text in ("buy", "long", "b"):
            return cls.BUY
        if text in ("sell", "short", "s"):
            return cls.SELL
        raise ValueError(f"Unknown direction '{value}'")


class PriceTier(Enum):
    MANUAL = "manual"
    OPTION_CHAIN = "option_chain"
    LIVE_QUOTE = "live_quote"
    ENTRY_FALLBACK = "entry_fallback"


class LifecycleError(Exception):
    """A lifecycle operation was rejected; nothing was mutated."""

    reason = "rejected"

    def __init__(self, message: str, recommendation_id: Optional[str] = None):
        self.recommendation_id = recommendation_id
        super().__init__(message)


class RecommendationNotFound(LifecycleError):
    reason = "not_found"


class StrategyNotFound(LifecycleError):
    reason = "strategy_not_found"


class NotOwner(LifecycleError):
    reason = "not_owner"


class InvalidTransition(LifecycleError):
    reason = "invalid_transition"


class MissingRationale(LifecycleError):
    reason = "missing_rationale"


class PriceUnavailableError(LifecycleError):
    reason = "price_unavailable"


class InvalidRecommendation(LifecycleError):
    reason = "invalid_recommendation"


@dataclass
class Strategy:
    strategy_id: str
    advisor_id: str
    name: str
    type: str = "Equity"
    horizon: Optional[str] = None

    def __post_init__(self):
        kind = InstrumentKind.parse(self.type)
        if kind is None:
            raise ValueError("Strategy type is required")
        self.type = kind.value

    def is_intraday(self, horizon_label: str = "Intraday") -> bool:
        return horizon_label.lower() in (self.horizon or "").lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_id': self.strategy_id,
            'advisor_id': self.advisor_id,
            'name': self.name,
            'type': self.type,
            'horizon': self.horizon,
        }


@dataclass
class Recommendation:
    """A Call or Position published (or drafted) by an advisor."""

    strategy_id: str
    kind: RecommendationKind
    name: str
    direction: Direction = Direction.BUY
    entry_price: Optional[float] = None
    entry_range_low: Optional[float] = None
    entry_range_high: Optional[float] = None
    target: Optional[float] = None
    stop_loss: Optional[float] = None
    rationale: Optional[str] = None
    segment: Optional[str] = None
    expiry: Optional[str] = None
    strike_price: Optional[float] = None
    call_put: Optional[str] = None
    lots: Optional[int] = None
    status: Status = Status.ACTIVE
    publish_mode: PublishMode = PublishMode.DRAFT
    exit_price: Optional[float] = None
    exit_at: Optional[float] = None
    gain_percent: Optional[float] = None
    exit_price_tier: Optional[PriceTier] = None
    recommendation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    published_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status is Status.ACTIVE

    @property
    def is_live(self) -> bool:
        return self.publish_mode is PublishMode.LIVE

    @property
    def has_rationale(self) -> bool:
        return bool((self.rationale or "").strip())

    @property
    def effective_entry(self) -> Optional[float]:
        if self.entry_price is not None:
            return self.entry_price
        return self.entry_range_low

    def option_contract(self) -> Optional[OptionContract]:
        """The exact option contract, from explicit attributes or an encoded display name."""
        parsed = self.instrument()
        underlying = parsed.underlying if isinstance(parsed, OptionContract) else parsed.symbol
        contract = build_option_contract(underlying, self.expiry, self.strike_price, self.call_put)
        if contract is not None:
            return contract
        return parsed if isinstance(parsed, OptionContract) else None

    def instrument(self) -> Instrument:
        return parse_instrument_name(self.name)

    def visible_to_subscribers(self) -> bool:
        if self.status is Status.CLOSED:
            return True
        return self.publish_mode is PublishMode.LIVE

    def copy_with(self, **changes: Any) -> 'Recommendation':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.recommendation_id,
            'strategy_id': self.strategy_id,
            'kind': self.kind.value,
            'name': self.name,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'entry_range_low': self.entry_range_low,
            'entry_range_high': self.entry_range_high,
            'target': self.target,
            'stop_loss': self.stop_loss,
            'rationale': self.rationale,
            'segment': self.segment,
            'expiry': self.expiry,
            'strike_price': self.strike_price,
            'call_put': self.call_put,
            'lots': self.lots,
            'status': self.status.value,
            'publish_mode': self.publish_mode.value,
            'exit_price': self.exit_price,
            'exit_at': self.exit_at,
            'gain_percent': self.gain_percent,
            'exit_price_tier': self.exit_price_tier.value if self.exit_price_tier else None,
            'created_at': self.created_at,
            'published_at': self.published_at,
        }


def gain_percent(direction: Direction, entry: Optional[float], exit_price: float) -> float:
    """Realized gain in percent; inverted for short (Sell) recommendations."""
    if entry is None or entry <= 0:
        return 0.0
    if direction is Direction.SELL:
        raw = (entry - exit_price) / entry * 100.0
    else:
        raw = (exit_price - entry) / entry * 100.0
    return round(raw, 2)
