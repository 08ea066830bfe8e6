"""Instrument identity: provider exchange/segment resolution and display-name parsing."""
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union


class InstrumentKind(Enum):
    EQUITY = "Equity"
    BASKET = "Basket"
    FUTURE = "Future"
    COMMODITY = "Commodity"
    COMMODITY_FUTURE = "CommodityFuture"
    OPTION = "Option"

    @classmethod
    def parse(cls, value: Union[str, 'InstrumentKind', None]) -> Optional['InstrumentKind']:
        if value is None or isinstance(value, InstrumentKind):
            return value
        text = str(value).strip()
        if not text:
            return None
        for kind in cls:
            if kind.value.lower() == text.lower() or kind.name.lower() == text.lower():
                return kind
        raise ValueError(f"Unknown instrument kind '{value}'")


COMMODITY_SYMBOLS = frozenset({
    "CRUDEOIL", "GOLD", "GOLDM", "SILVER", "SILVERM",
    "NATURALGAS", "COPPER", "ZINC", "ALUMINIUM", "LEAD", "NICKEL", "COTTONCANDY",
})

INDEX_EXCHANGES = {
    "NIFTY": "NSE",
    "BANKNIFTY": "NSE",
    "FINNIFTY": "NSE",
    "MIDCPNIFTY": "NSE",
    "SENSEX": "BSE",
    "BANKEX": "BSE",
}

_COMMODITY_KINDS = (InstrumentKind.COMMODITY, InstrumentKind.COMMODITY_FUTURE)
_DERIVATIVE_KINDS = (InstrumentKind.FUTURE, InstrumentKind.OPTION)


@dataclass(frozen=True)
class ResolvedInstrument:
    exchange: str
    segment: str
    trading_symbol: str

    @property
    def exchange_symbol(self) -> str:
        return f"{self.exchange}_{self.trading_symbol}"


def resolve_instrument(symbol: str, kind: Union[str, InstrumentKind, None] = None) -> ResolvedInstrument:
    """Map a raw symbol plus optional kind hint to the provider's (exchange, segment, symbol).

    Table lookups run before kind hints, so an index name always resolves to
    the cash segment of its home exchange.
    """
    upper = (symbol or "").strip().upper()
    hint = InstrumentKind.parse(kind)

    if upper in COMMODITY_SYMBOLS:
        return ResolvedInstrument("MCX", "COMMODITY", upper)

    if upper in INDEX_EXCHANGES:
        return ResolvedInstrument(INDEX_EXCHANGES[upper], "CASH", upper)

    if hint in _COMMODITY_KINDS:
        return ResolvedInstrument("MCX", "COMMODITY", upper)

    if hint in _DERIVATIVE_KINDS:
        return ResolvedInstrument("NSE", "FNO", upper)

    return ResolvedInstrument("NSE", "CASH", upper)


def option_exchange(underlying: str) -> str:
    return INDEX_EXCHANGES.get((underlying or "").strip().upper(), "NSE")


class OptionRight(Enum):
    CALL = "CE"
    PUT = "PE"

    @classmethod
    def parse(cls, value: str) -> 'OptionRight':
        text = (value or "").strip().upper()
        if text in ("CE", "CALL", "C"):
            return cls.CALL
        if text in ("PE", "PUT", "P"):
            return cls.PUT
        raise ValueError(f"Unknown option right '{value}'")


@dataclass(frozen=True)
class Equity:
    symbol: str


@dataclass(frozen=True)
class OptionContract:
    underlying: str
    expiry: date
    strike: float
    right: OptionRight

    @property
    def exchange(self) -> str:
        return option_exchange(self.underlying)

    @property
    def expiry_iso(self) -> str:
        return self.expiry.isoformat()

    def display_name(self) -> str:
        strike = int(self.strike) if float(self.strike).is_integer() else self.strike
        return f"{self.underlying} {self.expiry.strftime('%d%b%Y').upper()} {strike} {self.right.value}"


Instrument = Union[Equity, OptionContract]

_OPTION_NAME = re.compile(
    r"^(?P<underlying>[A-Z][A-Z0-9&\-]*)\s+"
    r"(?P<expiry>\d{1,2}[A-Z]{3}\d{4}|\d{4}-\d{2}-\d{2})\s+"
    r"(?P<strike>\d+(?:\.\d+)?)\s+"
    r"(?P<right>CE|PE|CALL|PUT)$"
)


def parse_expiry(value: Union[str, date, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip().upper()
    for fmt in ("%Y-%m-%d", "%d%b%Y", "%d-%b-%Y", "%d %b %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_instrument_name(name: str) -> Instrument:
    """Decode a display name into an Equity or an OptionContract."""
    text = " ".join((name or "").strip().upper().split())
    match = _OPTION_NAME.match(text)
    if match:
        expiry = parse_expiry(match.group('expiry'))
        if expiry is not None:
            return OptionContract(
                underlying=match.group('underlying'),
                expiry=expiry,
                strike=float(match.group('strike')),
                right=OptionRight.parse(match.group('right')),
            )
    return Equity(text)


def build_option_contract(
    underlying: Optional[str],
    expiry: Union[str, date, None],
    strike: Optional[float],
    right: Optional[str],
) -> Optional[OptionContract]:
    """Assemble a contract from explicit attributes; None when any part is missing."""
    if not underlying or strike is None or not right:
        return None
    parsed_expiry = parse_expiry(expiry)
    if parsed_expiry is None:
        return None
    try:
        option_right = OptionRight.parse(right)
        strike_value = float(strike)
    except (TypeError, ValueError):
        return None
    return OptionContract(
        underlying=underlying.strip().upper(),
        expiry=parsed_expiry,
        strike=strike_value,
        right=option_right,
    )
