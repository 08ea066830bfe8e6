import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from strategy.recommendation_types import PriceTier, Recommendation


logger = logging.getLogger(__name__)


class SquareOffAuditor:
    """Appends one JSON line per forced close so fallback exits can be reviewed later."""

    def __init__(self, log_path: Optional[str] = None):
        self.log_path = Path(log_path or 'logs/square_off_audit.jsonl')

    def record_close(self, recommendation: Recommendation, tier: PriceTier, strategy_name: str = None):
        self._write_entry({
            'timestamp': time.time(),
            'event': 'square_off',
            'recommendation_id': recommendation.recommendation_id,
            'strategy_id': recommendation.strategy_id,
            'strategy_name': strategy_name,
            'kind': recommendation.kind.value,
            'name': recommendation.name,
            'direction': recommendation.direction.value,
            'entry_price': recommendation.effective_entry,
            'exit_price': recommendation.exit_price,
            'gain_percent': recommendation.gain_percent,
            'price_tier': tier.value,
            'needs_review': tier is PriceTier.ENTRY_FALLBACK,
        })

    def record_failure(self, recommendation_id: str, strategy_id: str, error: Any):
        self._write_entry({
            'timestamp': time.time(),
            'event': 'square_off_failed',
            'recommendation_id': recommendation_id,
            'strategy_id': strategy_id,
            'error': str(error),
        })

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except Exception as exc:
            logger.error("Failed to persist square-off audit entry: %s", exc)
