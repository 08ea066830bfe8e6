import asyncio
import csv
import io
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from api.metrics import metrics
from ingest.credentials import CredentialError, CredentialManager
from ingest.groww_rest import GrowwRESTClient, ProviderAPIError, ProviderUnavailable
from ingest.instruments import OptionContract, OptionRight, ResolvedInstrument, resolve_instrument
from ingest.ohlc import OHLC, parse_ohlc
from ingest.quote_cache import PriceCache, QuoteSnapshot


logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (ProviderAPIError, ProviderUnavailable, CredentialError)

QUOTE_PATH = '/live-data/quote'
LTP_PATH = '/live-data/ltp'
OHLC_PATH = '/live-data/ohlc'
OPTION_CHAIN_PATH = '/option-chain/exchange/{exchange}/underlying/{underlying}'
DEFAULT_INSTRUMENTS_URL = 'https://growwapi-assets.groww.in/instruments/instrument.csv'

QuoteRequest = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class OptionLeg:
    ltp: float
    change: float = 0.0
    oi: float = 0.0
    volume: float = 0.0
    iv: Optional[float] = None
    bid_price: Optional[float] = None
    ask_price: Optional[float] = None
    trading_symbol: Optional[str] = None


@dataclass(frozen=True)
class OptionStrike:
    strike_price: float
    ce: Optional[OptionLeg] = None
    pe: Optional[OptionLeg] = None

    def leg(self, right: OptionRight) -> Optional[OptionLeg]:
        return self.ce if right is OptionRight.CALL else self.pe

    def as_dict(self) -> Dict[str, Any]:
        return {
            'strike_price': self.strike_price,
            'ce': self.ce.__dict__ if self.ce else None,
            'pe': self.pe.__dict__ if self.pe else None,
        }


def _num(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _opt_num(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _success_payload(data: Any) -> Optional[Any]:
    if not isinstance(data, dict):
        return None
    if data.get('status') != 'SUCCESS':
        return None
    return data.get('payload')


def derive_change(last_price: float, previous_close: float) -> Tuple[float, float]:
    if previous_close <= 0:
        return 0.0, 0.0
    change = last_price - previous_close
    return change, change / previous_close * 100.0


class QuoteGateway:
    """Fetch quotes from Groww with caching, batching, and token recovery."""

    def __init__(
        self,
        rest: GrowwRESTClient,
        credentials: CredentialManager,
        cache: PriceCache,
        batch_size: int = 50,
        max_parallel_batches: int = 4,
        single_quote_parallelism: int = 5,
        instruments_url: str = DEFAULT_INSTRUMENTS_URL,
        instruments_cache_ttl_s: float = 6 * 60 * 60,
        timezone: str = 'Asia/Kolkata',
        clock: Callable[[], float] = time.time,
    ):
        self.rest = rest
        self.credentials = credentials
        self.cache = cache
        self.batch_size = max(1, int(batch_size))
        self.max_parallel_batches = max(1, int(max_parallel_batches))
        self.single_quote_parallelism = max(1, int(single_quote_parallelism))
        self.instruments_url = instruments_url
        self.instruments_cache_ttl_s = instruments_cache_ttl_s
        self.tz = ZoneInfo(timezone)
        self._clock = clock
        self._instruments: Optional[List[Dict[str, str]]] = None
        self._instruments_fetched_at = 0.0

    async def _authorized_get(self, endpoint: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with the current token; a 403 clears the token and retries once."""
        for attempt in range(2):
            credential = await self.credentials.get_token()
            started = time.monotonic()
            try:
                payload = await self.rest.get(path, params=params, bearer=credential.token)
            except ProviderAPIError as exc:
                metrics.record_provider_request(endpoint, f"http_{exc.status}", time.monotonic() - started)
                if exc.is_auth_failure:
                    self.credentials.invalidate()
                    if attempt == 0:
                        logger.warning("Groww %s rejected token (403); re-acquiring once", endpoint)
                        continue
                raise
            except ProviderUnavailable:
                metrics.record_provider_request(endpoint, 'unavailable', time.monotonic() - started)
                raise
            metrics.record_provider_request(endpoint, 'ok', time.monotonic() - started)
            return payload
        raise CredentialError(f"Groww {endpoint} request rejected after token refresh")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get_quote(self, symbol: str, kind: Optional[str] = None) -> Optional[QuoteSnapshot]:
        try:
            resolved = resolve_instrument(symbol, kind)
        except ValueError as exc:
            logger.warning("Cannot resolve quote for %s: %s", symbol, exc)
            return None
        cached = self.cache.get(symbol, kind)
        if cached is not None:
            return cached

        params = {
            'exchange': resolved.exchange,
            'segment': resolved.segment,
            'trading_symbol': resolved.trading_symbol,
        }
        try:
            data = await self._authorized_get('quote', QUOTE_PATH, params)
        except PROVIDER_ERRORS as exc:
            logger.error("Groww quote error for %s: %s", symbol, exc)
            return None

        payload = _success_payload(data)
        if not isinstance(payload, dict) or payload.get('last_price') is None:
            logger.warning("Groww quote for %s returned no usable payload", symbol)
            return None

        snapshot = self._snapshot_from_quote(resolved, payload)
        self.cache.put(symbol, kind, snapshot)
        return snapshot

    def _snapshot_from_quote(self, resolved: ResolvedInstrument, payload: Dict[str, Any]) -> QuoteSnapshot:
        ohlc = parse_ohlc(payload.get('ohlc'))
        last_price = _num(payload.get('last_price'))
        change = _opt_num(payload.get('day_change'))
        change_pct = _opt_num(payload.get('day_change_perc'))
        if change is None or change_pct is None:
            derived_change, derived_pct = derive_change(last_price, ohlc.close)
            change = derived_change if change is None else change
            change_pct = derived_pct if change_pct is None else change_pct
        observed = payload.get('last_trade_time')
        return QuoteSnapshot(
            symbol=resolved.trading_symbol,
            exchange=resolved.exchange,
            last_price=last_price,
            change=change,
            change_percent=change_pct,
            high=_num(payload.get('high_trade_range')) or ohlc.high,
            low=_num(payload.get('low_trade_range')) or ohlc.low,
            open=ohlc.open,
            previous_close=ohlc.close,
            observed_at_ms=int(observed) if observed else self._now_ms(),
        )

    async def get_live_prices(self, items: Iterable[QuoteRequest]) -> Dict[str, QuoteSnapshot]:
        """Single-quote path for a list of instruments, a few requests in flight at a time."""
        requests = list(items)
        results: Dict[str, QuoteSnapshot] = {}
        step = self.single_quote_parallelism
        for start in range(0, len(requests), step):
            batch = requests[start:start + step]
            outcomes = await asyncio.gather(
                *(self.get_quote(symbol, kind) for symbol, kind in batch),
                return_exceptions=True,
            )
            for (symbol, _), outcome in zip(batch, outcomes):
                if isinstance(outcome, QuoteSnapshot):
                    results[symbol] = outcome
                elif isinstance(outcome, Exception):
                    logger.error("Live price fetch for %s failed: %s", symbol, outcome)
        return results

    async def get_bulk_quotes(self, items: Iterable[QuoteRequest]) -> Dict[str, QuoteSnapshot]:
        results: Dict[str, QuoteSnapshot] = {}
        uncached: Dict[str, List[Tuple[str, Optional[str], ResolvedInstrument]]] = {}
        seen = set()

        for symbol, kind in items:
            if symbol in seen:
                continue
            seen.add(symbol)
            try:
                resolved = resolve_instrument(symbol, kind)
            except ValueError as exc:
                logger.warning("Skipping bulk quote for %s: %s", symbol, exc)
                continue
            cached = self.cache.get(symbol, kind)
            if cached is not None:
                results[symbol] = cached
                continue
            uncached.setdefault(resolved.segment, []).append((symbol, kind, resolved))

        if not uncached:
            return results

        semaphore = asyncio.Semaphore(self.max_parallel_batches)

        async def run(segment: str, batch: Sequence[Tuple[str, Optional[str], ResolvedInstrument]]):
            async with semaphore:
                return await self._fetch_bulk_batch(segment, batch)

        jobs = []
        for segment, entries in uncached.items():
            for start in range(0, len(entries), self.batch_size):
                jobs.append(run(segment, entries[start:start + self.batch_size]))

        for outcome in await asyncio.gather(*jobs, return_exceptions=True):
            if isinstance(outcome, dict):
                results.update(outcome)
            elif isinstance(outcome, Exception):
                logger.error("Bulk quote batch failed: %s", outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
        return results

    async def _fetch_bulk_batch(
        self,
        segment: str,
        batch: Sequence[Tuple[str, Optional[str], ResolvedInstrument]],
    ) -> Dict[str, QuoteSnapshot]:
        params = {
            'segment': segment,
            'exchange_symbols': ",".join(resolved.exchange_symbol for _, _, resolved in batch),
        }
        ltp_data, ohlc_data = await asyncio.gather(
            self._authorized_get('ltp', LTP_PATH, params),
            self._authorized_get('ohlc', OHLC_PATH, params),
            return_exceptions=True,
        )
        for outcome in (ltp_data, ohlc_data):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        if isinstance(ltp_data, Exception):
            logger.error("Groww bulk LTP error for %s batch of %s: %s", segment, len(batch), ltp_data)
            return {}
        ltp_payload = _success_payload(ltp_data)
        if not isinstance(ltp_payload, dict):
            logger.warning("Groww bulk LTP for %s returned no payload", segment)
            return {}

        ohlc_map: Dict[str, OHLC] = {}
        if isinstance(ohlc_data, Exception):
            logger.warning("Groww bulk OHLC error for %s; continuing without change figures: %s", segment, ohlc_data)
        else:
            ohlc_payload = _success_payload(ohlc_data)
            if isinstance(ohlc_payload, dict):
                ohlc_map = {key: parse_ohlc(raw) for key, raw in ohlc_payload.items()}

        now_ms = self._now_ms()
        out: Dict[str, QuoteSnapshot] = {}
        for symbol, kind, resolved in batch:
            key = resolved.exchange_symbol
            ltp = _opt_num(ltp_payload.get(key))
            if ltp is None:
                continue
            ohlc = ohlc_map.get(key, OHLC.empty())
            change, change_pct = derive_change(ltp, ohlc.close)
            snapshot = QuoteSnapshot(
                symbol=resolved.trading_symbol,
                exchange=resolved.exchange,
                last_price=ltp,
                change=change,
                change_percent=change_pct,
                high=ohlc.high,
                low=ohlc.low,
                open=ohlc.open,
                previous_close=ohlc.close,
                observed_at_ms=now_ms,
            )
            self.cache.put(symbol, kind, snapshot)
            out[symbol] = snapshot
        return out

    async def get_bulk_ohlc(
        self,
        symbols: Iterable[str],
        segment: str = 'CASH',
        exchange: str = 'NSE',
    ) -> Dict[str, OHLC]:
        """Daily OHLC reference values keyed by bare symbol."""
        names = [s.strip().upper() for s in symbols if s and s.strip()]
        results: Dict[str, OHLC] = {}
        for start in range(0, len(names), self.batch_size):
            batch = names[start:start + self.batch_size]
            params = {
                'segment': segment,
                'exchange_symbols': ",".join(f"{exchange}_{name}" for name in batch),
            }
            try:
                data = await self._authorized_get('ohlc', OHLC_PATH, params)
            except PROVIDER_ERRORS as exc:
                logger.error("Groww bulk OHLC batch failed: %s", exc)
                continue
            payload = _success_payload(data)
            if not isinstance(payload, dict):
                continue
            for key, raw in payload.items():
                bare = key.split('_', 1)[1] if key.split('_', 1)[0] in ('NSE', 'BSE', 'MCX') else key
                results[bare] = parse_ohlc(raw)
        return results

    async def get_option_chain(self, exchange: str, underlying: str, expiry_date: str) -> List[OptionStrike]:
        path = OPTION_CHAIN_PATH.format(exchange=exchange, underlying=underlying.upper())
        try:
            data = await self._authorized_get('option_chain', path, {'expiry_date': expiry_date})
        except PROVIDER_ERRORS as exc:
            logger.error("Groww option chain error for %s %s: %s", underlying, expiry_date, exc)
            return []
        payload = data.get('payload') if isinstance(data, dict) else None
        if not payload:
            return []
        return sorted(self._parse_option_chain(payload), key=lambda s: s.strike_price)

    def _parse_option_chain(self, payload: Any) -> List[OptionStrike]:
        strikes: List[OptionStrike] = []
        if isinstance(payload, dict) and isinstance(payload.get('strikes'), dict):
            for strike_text, legs in payload['strikes'].items():
                strike = _opt_num(strike_text)
                if strike is None or not isinstance(legs, dict):
                    continue
                strikes.append(OptionStrike(
                    strike_price=strike,
                    ce=self._parse_leg(legs.get('CE')),
                    pe=self._parse_leg(legs.get('PE')),
                ))
            return strikes

        chain = payload.get('option_chain', payload) if isinstance(payload, dict) else payload
        if not isinstance(chain, list):
            return strikes
        for item in chain:
            if not isinstance(item, dict):
                continue
            strike = _opt_num(item.get('strike_price', item.get('strikePrice')))
            if strike is None:
                continue
            strikes.append(OptionStrike(
                strike_price=strike,
                ce=self._parse_leg(item.get('ce')),
                pe=self._parse_leg(item.get('pe')),
            ))
        return strikes

    @staticmethod
    def _parse_leg(leg: Any) -> Optional[OptionLeg]:
        if not isinstance(leg, dict):
            return None
        greeks = leg.get('greeks') if isinstance(leg.get('greeks'), dict) else {}
        return OptionLeg(
            ltp=_num(leg.get('ltp', leg.get('last_price'))),
            change=_num(leg.get('day_change', leg.get('change'))),
            oi=_num(leg.get('open_interest', leg.get('oi'))),
            volume=_num(leg.get('volume')),
            iv=_opt_num(greeks.get('iv', leg.get('iv'))),
            bid_price=_opt_num(leg.get('bid_price')),
            ask_price=_opt_num(leg.get('offer_price')),
            trading_symbol=leg.get('trading_symbol'),
        )

    async def get_option_premium(self, contract: OptionContract) -> Optional[float]:
        chain = await self.get_option_chain(contract.exchange, contract.underlying, contract.expiry_iso)
        for strike in chain:
            if abs(strike.strike_price - contract.strike) > 1e-6:
                continue
            leg = strike.leg(contract.right)
            if leg is not None and leg.ltp > 0:
                return leg.ltp
            return None
        return None

    async def _load_instruments(self) -> List[Dict[str, str]]:
        now = self._clock()
        if self._instruments is not None and now - self._instruments_fetched_at < self.instruments_cache_ttl_s:
            return self._instruments
        try:
            text = await self.rest.get_text(self.instruments_url)
        except (ProviderAPIError, ProviderUnavailable) as exc:
            logger.error("Instruments CSV fetch failed: %s", exc)
            return self._instruments or []

        rows = []
        for row in csv.DictReader(io.StringIO(text)):
            row = {(k or '').strip(): (v or '').strip() for k, v in row.items()}
            if row.get('segment') == 'FNO' and row.get('expiry_date') and row.get('underlying_symbol'):
                rows.append(row)
        self._instruments = rows
        self._instruments_fetched_at = now
        logger.info("Instruments CSV loaded: %s FNO instruments", len(rows))
        return rows

    async def get_option_expiries(
        self,
        exchange: str,
        underlying: str,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> List[str]:
        instruments = await self._load_instruments()
        today = datetime.fromtimestamp(self._clock(), self.tz).date().isoformat()
        prefix = None
        if year is not None and month is not None:
            prefix = f"{int(year):04d}-{int(month):02d}"
        expiries = set()
        for row in instruments:
            if row.get('exchange') != exchange or row.get('underlying_symbol') != underlying.upper():
                continue
            expiry = row['expiry_date']
            if expiry < today:
                continue
            if prefix and not expiry.startswith(prefix):
                continue
            expiries.add(expiry)
        return sorted(expiries)
