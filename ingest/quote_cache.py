import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from api.metrics import metrics
from ingest.instruments import InstrumentKind


@dataclass(frozen=True)
class QuoteSnapshot:
    """Normalized last-price view of one instrument at one instant."""

    symbol: str
    exchange: str
    last_price: float
    change: float
    change_percent: float
    high: float
    low: float
    open: float
    previous_close: float
    observed_at_ms: int

    def as_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'exchange': self.exchange,
            'ltp': self.last_price,
            'change': self.change,
            'change_percent': self.change_percent,
            'high': self.high,
            'low': self.low,
            'open': self.open,
            'close': self.previous_close,
            'timestamp': self.observed_at_ms,
        }


@dataclass(frozen=True)
class CacheEntry:
    snapshot: QuoteSnapshot
    expires_at: float


CacheKey = Tuple[str, str]


def cache_key(symbol: str, kind) -> CacheKey:
    parsed = InstrumentKind.parse(kind)
    return ((symbol or '').strip().upper(), parsed.value if parsed else '')


class PriceCache:
    """Short-lived quote cache; entries expire lazily on read."""

    def __init__(self, ttl_s: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def get(self, symbol: str, kind: Optional[str] = None) -> Optional[QuoteSnapshot]:
        key = cache_key(symbol, kind)
        entry = self._entries.get(key)
        if entry is None:
            metrics.record_cache_miss()
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            metrics.record_cache_miss()
            return None
        metrics.record_cache_hit()
        return entry.snapshot

    def put(self, symbol: str, kind: Optional[str], snapshot: QuoteSnapshot) -> None:
        self._entries[cache_key(symbol, kind)] = CacheEntry(snapshot, self._clock() + self.ttl_s)
        metrics.update_cache_size(len(self._entries))

    def clear(self) -> None:
        self._entries.clear()
        metrics.record_cache_clear()
        metrics.update_cache_size(0)

    def __len__(self) -> int:
        return len(self._entries)
