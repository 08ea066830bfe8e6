import logging
from dataclasses import dataclass
from typing import Optional

from ingest.instruments import Equity, OptionContract
from ingest.quote_gateway import QuoteGateway
from strategy.recommendation_types import PriceTier, Recommendation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPrice:
    price: float
    tier: PriceTier


class MarketPriceResolver:
    """Find a closing price for a recommendation from the freshest source available."""

    def __init__(self, gateway: QuoteGateway):
        self.gateway = gateway

    async def live_price(self, recommendation: Recommendation, kind: Optional[str] = None) -> Optional[ResolvedPrice]:
        contract = recommendation.option_contract()
        if isinstance(contract, OptionContract):
            # Only the exact contract's premium is meaningful; an underlying quote is not.
            premium = await self.gateway.get_option_premium(contract)
            if premium is not None and premium > 0:
                return ResolvedPrice(premium, PriceTier.OPTION_CHAIN)
            return None

        instrument = recommendation.instrument()
        symbol = instrument.symbol if isinstance(instrument, Equity) else recommendation.name
        quote = await self.gateway.get_quote(symbol, kind)
        if quote is not None and quote.last_price > 0:
            return ResolvedPrice(quote.last_price, PriceTier.LIVE_QUOTE)
        return None

    async def square_off_price(self, recommendation: Recommendation, kind: Optional[str] = None) -> ResolvedPrice:
        try:
            resolved = await self.live_price(recommendation, kind)
        except Exception as exc:
            logger.error("Live price lookup for %s failed: %s", recommendation.recommendation_id, exc)
            resolved = None
        if resolved is not None:
            return resolved
        entry = recommendation.effective_entry
        logger.warning(
            "No live price for %s (%s); closing at entry %s. Advisor should correct the exit price.",
            recommendation.recommendation_id,
            recommendation.name,
            entry,
        )
        return ResolvedPrice(float(entry or 0.0), PriceTier.ENTRY_FALLBACK)
