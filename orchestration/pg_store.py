import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from orchestration.persistence import RecommendationStore
from strategy.basket_types import BasketConstituent, BasketRebalance, ConstituentAction, VersionConflict
from strategy.recommendation_types import (
    Direction,
    PriceTier,
    PublishMode,
    Recommendation,
    RecommendationKind,
    Status,
    Strategy,
)


logger = logging.getLogger(__name__)

SCHEMA = '''
CREATE TABLE IF NOT EXISTS strategies (
    id TEXT PRIMARY KEY,
    advisor_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'Equity'
        CHECK (type IN ('Equity', 'Basket', 'Future', 'Commodity', 'CommodityFuture', 'Option')),
    horizon TEXT
);

CREATE TABLE IF NOT EXISTS recommendations (
    id TEXT PRIMARY KEY,
    strategy_id TEXT NOT NULL REFERENCES strategies(id),
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'Buy',
    entry_price DOUBLE PRECISION,
    entry_range_low DOUBLE PRECISION,
    entry_range_high DOUBLE PRECISION,
    target DOUBLE PRECISION,
    stop_loss DOUBLE PRECISION,
    rationale TEXT,
    segment TEXT,
    expiry TEXT,
    strike_price DOUBLE PRECISION,
    call_put TEXT,
    lots INTEGER,
    status TEXT NOT NULL DEFAULT 'Active',
    publish_mode TEXT NOT NULL DEFAULT 'draft',
    exit_price DOUBLE PRECISION,
    exit_at TIMESTAMPTZ,
    gain_percent DOUBLE PRECISION,
    exit_price_tier TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    published_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS recommendations_strategy_status
    ON recommendations (strategy_id, status);

CREATE TABLE IF NOT EXISTS basket_rebalances (
    id TEXT PRIMARY KEY,
    strategy_id TEXT NOT NULL REFERENCES strategies(id),
    version INTEGER NOT NULL,
    effective_at TIMESTAMPTZ NOT NULL,
    notes TEXT,
    UNIQUE (strategy_id, version)
);

CREATE TABLE IF NOT EXISTS basket_constituents (
    rebalance_id TEXT NOT NULL REFERENCES basket_rebalances(id),
    position INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    exchange TEXT NOT NULL,
    weight_percent DOUBLE PRECISION NOT NULL,
    quantity DOUBLE PRECISION,
    price_at_rebalance DOUBLE PRECISION,
    action TEXT NOT NULL,
    PRIMARY KEY (rebalance_id, position)
);
'''

_TIMESTAMP_FIELDS = ('exit_at', 'created_at', 'published_at')
_ENUM_FIELDS = {
    'kind': RecommendationKind,
    'direction': Direction,
    'status': Status,
    'publish_mode': PublishMode,
    'exit_price_tier': PriceTier,
}
_COLUMNS = (
    'strategy_id', 'kind', 'name', 'direction', 'entry_price', 'entry_range_low',
    'entry_range_high', 'target', 'stop_loss', 'rationale', 'segment', 'expiry',
    'strike_price', 'call_put', 'lots', 'status', 'publish_mode', 'exit_price',
    'exit_at', 'gain_percent', 'exit_price_tier', 'created_at', 'published_at',
)


def _to_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _from_ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _to_column(name: str, value: Any) -> Any:
    if name in _TIMESTAMP_FIELDS:
        return _to_ts(value)
    if name in _ENUM_FIELDS and value is not None:
        return value.value
    return value


def _row_to_recommendation(row: asyncpg.Record) -> Recommendation:
    data = dict(row)
    kwargs: Dict[str, Any] = {'recommendation_id': data.pop('id')}
    for name in _COLUMNS:
        value = data.get(name)
        if name in _TIMESTAMP_FIELDS:
            value = _from_ts(value)
        elif name in _ENUM_FIELDS and value is not None:
            value = _ENUM_FIELDS[name](value)
        kwargs[name] = value
    return Recommendation(**kwargs)


class PostgresStore(RecommendationStore):
    def __init__(self, db_config: Dict[str, Any]):
        self.db_config = db_config
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        db_config = self.db_config
        self.pool = await asyncpg.create_pool(
            host=db_config['host'],
            port=db_config['port'],
            database=db_config['database'],
            user=db_config['user'],
            password=db_config['password'],
            min_size=int(db_config.get('min_pool_size', 2)),
            max_size=int(db_config.get('max_pool_size', 10)),
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("PostgreSQL store ready (%s@%s)", db_config['database'], db_config['host'])

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO strategies (id, advisor_id, name, type, horizon)
                   VALUES ($1, $2, $3, $4, $5)
                   ON CONFLICT (id) DO UPDATE SET
                       advisor_id = EXCLUDED.advisor_id,
                       name = EXCLUDED.name,
                       type = EXCLUDED.type,
                       horizon = EXCLUDED.horizon''',
                strategy.strategy_id,
                strategy.advisor_id,
                strategy.name,
                strategy.type,
                strategy.horizon,
            )
        return strategy

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM strategies WHERE id = $1', strategy_id)
        if row is None:
            return None
        return Strategy(row['id'], row['advisor_id'], row['name'], row['type'], row['horizon'])

    async def list_strategies(self) -> List[Strategy]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM strategies ORDER BY name')
        return [Strategy(r['id'], r['advisor_id'], r['name'], r['type'], r['horizon']) for r in rows]

    async def create_recommendation(self, recommendation: Recommendation) -> Recommendation:
        columns = ('id',) + _COLUMNS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        values = [recommendation.recommendation_id] + [
            _to_column(name, getattr(recommendation, name)) for name in _COLUMNS
        ]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO recommendations ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                *values,
            )
        return _row_to_recommendation(row)

    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM recommendations WHERE id = $1', recommendation_id)
        return _row_to_recommendation(row) if row else None

    async def list_recommendations(
        self,
        strategy_id: str,
        status: Optional[Status] = None,
    ) -> List[Recommendation]:
        async with self.pool.acquire() as conn:
            if status is None:
                rows = await conn.fetch(
                    'SELECT * FROM recommendations WHERE strategy_id = $1 ORDER BY created_at DESC',
                    strategy_id,
                )
            else:
                rows = await conn.fetch(
                    '''SELECT * FROM recommendations
                       WHERE strategy_id = $1 AND status = $2
                       ORDER BY created_at DESC''',
                    strategy_id,
                    status.value,
                )
        return [_row_to_recommendation(r) for r in rows]

    async def update_recommendation(
        self,
        recommendation_id: str,
        changes: Dict[str, Any],
        expected_status: Status,
    ) -> Optional[Recommendation]:
        unknown = set(changes) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown recommendation fields: {sorted(unknown)}")
        if not changes:
            return await self.get_recommendation(recommendation_id)
        names = list(changes)
        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(names, start=3))
        values = [_to_column(name, changes[name]) for name in names]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''UPDATE recommendations SET {assignments}
                    WHERE id = $1 AND status = $2
                    RETURNING *''',
                recommendation_id,
                expected_status.value,
                *values,
            )
        return _row_to_recommendation(row) if row else None

    async def latest_basket_version(self, strategy_id: str) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                'SELECT COALESCE(MAX(version), 0) FROM basket_rebalances WHERE strategy_id = $1',
                strategy_id,
            )
        return int(value or 0)

    async def insert_rebalance(self, rebalance: BasketRebalance) -> BasketRebalance:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                try:
                    await conn.execute(
                        '''INSERT INTO basket_rebalances (id, strategy_id, version, effective_at, notes)
                           VALUES ($1, $2, $3, $4, $5)''',
                        rebalance.rebalance_id,
                        rebalance.strategy_id,
                        rebalance.version,
                        _to_ts(rebalance.effective_at),
                        rebalance.notes,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise VersionConflict(
                        f"Basket {rebalance.strategy_id} already has version {rebalance.version}"
                    ) from exc
                await conn.executemany(
                    '''INSERT INTO basket_constituents
                       (rebalance_id, position, symbol, exchange, weight_percent, quantity, price_at_rebalance, action)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8)''',
                    [
                        (
                            rebalance.rebalance_id,
                            idx,
                            c.symbol,
                            c.exchange,
                            c.weight_percent,
                            c.quantity,
                            c.price_at_rebalance,
                            c.action.value,
                        )
                        for idx, c in enumerate(rebalance.constituents)
                    ],
                )
        return rebalance

    async def list_rebalances(self, strategy_id: str) -> List[BasketRebalance]:
        async with self.pool.acquire() as conn:
            headers = await conn.fetch(
                'SELECT * FROM basket_rebalances WHERE strategy_id = $1 ORDER BY version',
                strategy_id,
            )
            if not headers:
                return []
            members = await conn.fetch(
                '''SELECT * FROM basket_constituents
                   WHERE rebalance_id = ANY($1::text[])
                   ORDER BY rebalance_id, position''',
                [h['id'] for h in headers],
            )
        grouped: Dict[str, List[BasketConstituent]] = {}
        for m in members:
            grouped.setdefault(m['rebalance_id'], []).append(
                BasketConstituent(
                    symbol=m['symbol'],
                    weight_percent=m['weight_percent'],
                    exchange=m['exchange'],
                    quantity=m['quantity'],
                    price_at_rebalance=m['price_at_rebalance'],
                    action=ConstituentAction.parse(m['action']),
                )
            )
        return [
            BasketRebalance(
                strategy_id=h['strategy_id'],
                version=h['version'],
                constituents=tuple(grouped.get(h['id'], [])),
                notes=h['notes'],
                effective_at=_from_ts(h['effective_at']),
                rebalance_id=h['id'],
            )
            for h in headers
        ]
