import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from api.metrics import metrics


logger = logging.getLogger(__name__)

_PAIR = re.compile(r"(?<!\w)[\"']?(open|high|low|close)[\"']?\s*[:=]\s*[\"']?(-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)")


@dataclass(frozen=True)
class OHLC:
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0

    @classmethod
    def empty(cls) -> 'OHLC':
        return cls()

    @property
    def is_empty(self) -> bool:
        return not (self.open or self.high or self.low or self.close)


def _as_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if result == result else 0.0


def _from_mapping(data: Mapping[str, Any]) -> OHLC:
    return OHLC(
        open=_as_float(data.get('open')),
        high=_as_float(data.get('high')),
        low=_as_float(data.get('low')),
        close=_as_float(data.get('close')),
    )


def parse_ohlc(raw: Any) -> OHLC:
    """Parse an OHLC blob that may arrive as a dict, JSON, or the provider's unquoted form.

    The quote endpoints return strings like ``{open: 101.5,high: 103,low: 99.2,close: 100}``.
    Anything unrecoverable degrades to zeros.
    """
    if raw is None or raw == '':
        return OHLC.empty()
    if isinstance(raw, Mapping):
        return _from_mapping(raw)
    if not isinstance(raw, str):
        metrics.record_ohlc_repair('failed')
        return OHLC.empty()

    text = raw.strip()
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, Mapping):
        return _from_mapping(decoded)

    pairs = {key.lower(): value for key, value in _PAIR.findall(text)}
    if not pairs:
        logger.debug("Unparseable OHLC payload: %r", raw)
        metrics.record_ohlc_repair('failed')
        return OHLC.empty()
    metrics.record_ohlc_repair('repaired')
    return _from_mapping(pairs)
