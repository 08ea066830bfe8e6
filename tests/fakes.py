"""In-process stand-ins for the provider transport, clocks, and the notification webhook."""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from ingest.quote_cache import QuoteSnapshot

IST = ZoneInfo('Asia/Kolkata')


def ist_epoch(year: int, month: int, day: int, hour: int, minute: int = 0, second: int = 0) -> float:
    return datetime(year, month, day, hour, minute, second, tzinfo=IST).timestamp()


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Route = Union[Any, Exception, Callable[[Optional[Dict[str, Any]]], Any]]


class FakeRESTClient:
    """Answers by path; a route may be a value, an exception to raise, or a list consumed per call."""

    def __init__(self, routes: Optional[Dict[str, Route]] = None, token: str = 'tok-1'):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.routes.setdefault('/token/api/access', {'token': token})
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]], Optional[str]]] = []
        self.posts: List[Tuple[str, Optional[Dict[str, Any]], Optional[str]]] = []
        self.closed = False

    def _answer(self, path: str, params: Optional[Dict[str, Any]]) -> Any:
        if path not in self.routes:
            raise AssertionError(f"unexpected request to {path}")
        route = self.routes[path]
        if isinstance(route, list):
            route = route.pop(0)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(params)
        return route

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, bearer: Optional[str] = None) -> Any:
        self.calls.append(('GET', path, params, bearer))
        return self._answer(path, params)

    async def post(self, path: str, json_body: Optional[Dict[str, Any]] = None, bearer: Optional[str] = None) -> Any:
        self.posts.append((path, json_body, bearer))
        return self._answer(path, json_body)

    async def get_text(self, url: str) -> str:
        self.calls.append(('GET', url, None, None))
        return self._answer(url, None)

    async def close(self):
        self.closed = True

    def count(self, path: str) -> int:
        return sum(1 for _, p, _, _ in self.calls if p == path)


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, title, body, scope='strategy_subscribers', strategy_id=None, item_id=None, data=None):
        if self.fail:
            raise RuntimeError("webhook down")
        self.sent.append({
            'title': title,
            'body': body,
            'scope': scope,
            'strategy_id': strategy_id,
            'item_id': item_id,
            'data': data or {},
        })

    def events(self) -> List[str]:
        return [n['data'].get('event') for n in self.sent]


def snapshot(symbol: str, last_price: float, exchange: str = 'NSE') -> QuoteSnapshot:
    return QuoteSnapshot(
        symbol=symbol,
        exchange=exchange,
        last_price=last_price,
        change=0.0,
        change_percent=0.0,
        high=last_price,
        low=last_price,
        open=last_price,
        previous_close=last_price,
        observed_at_ms=0,
    )


class FakeGateway:
    """Quote gateway double with fixed quotes and option premiums."""

    def __init__(self, quotes: Optional[Dict[str, float]] = None, premiums: Optional[Dict[Tuple, float]] = None):
        self.quotes = dict(quotes or {})
        self.premiums = dict(premiums or {})
        self.quote_requests: List[Tuple[str, Optional[str]]] = []
        self.premium_requests: List[Any] = []

    async def get_quote(self, symbol, kind=None):
        self.quote_requests.append((symbol, kind))
        price = self.quotes.get(symbol)
        return snapshot(symbol, price) if price is not None else None

    async def get_option_premium(self, contract):
        self.premium_requests.append(contract)
        key = (contract.underlying, contract.expiry_iso, contract.strike, contract.right.value)
        return self.premiums.get(key)
