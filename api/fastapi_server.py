import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, field_validator

from config import config
from config.utils import get_config_section
from ingest.instruments import InstrumentKind
from monitoring.logging_utils import setup_logging
from strategy.basket_types import BasketValidationError, VersionConflict
from strategy.recommendation_types import LifecycleError, Strategy


ERROR_STATUS = {
    'not_found': 404,
    'strategy_not_found': 404,
    'not_owner': 403,
    'invalid_transition': 409,
    'price_unavailable': 409,
    'missing_rationale': 422,
    'invalid_recommendation': 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    system = getattr(app.state, 'system', None)
    task = None
    if system is None:
        from main import AdvisorySystem
        system = AdvisorySystem()
        app.state.system = system
        task = asyncio.create_task(system.start())
    else:
        await system.initialize()
    try:
        yield
    finally:
        await system.stop()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Advisory Market Data API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_config_section(config, 'api').get('cors_origins') or []),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _system(request: Request):
    system = getattr(request.app.state, 'system', None)
    if system is None:
        raise HTTPException(status_code=503, detail="Advisory system not initialized")
    return system


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.reason, 400),
        content={"error": exc.reason, "detail": str(exc), "id": exc.recommendation_id},
    )


@app.exception_handler(BasketValidationError)
async def basket_error_handler(request: Request, exc: BasketValidationError):
    return JSONResponse(status_code=422, content={"error": "invalid_basket", "detail": exc.errors})


@app.exception_handler(VersionConflict)
async def version_conflict_handler(request: Request, exc: VersionConflict):
    return JSONResponse(status_code=409, content={"error": "version_conflict", "detail": str(exc)})


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


class QuoteItem(BaseModel):
    symbol: str
    kind: Optional[str] = None


class BulkQuoteRequest(BaseModel):
    items: List[QuoteItem]


class StrategyRequest(BaseModel):
    advisor_id: str
    name: str
    type: str = "Equity"
    horizon: Optional[str] = None

    @field_validator('type')
    @classmethod
    def known_type(cls, value: str) -> str:
        kind = InstrumentKind.parse(value)
        if kind is None:
            raise ValueError("type is required")
        return kind.value


class CallRequest(BaseModel):
    name: str
    direction: str = "Buy"
    entry_price: Optional[float] = None
    entry_range_low: Optional[float] = None
    entry_range_high: Optional[float] = None
    target: Optional[float] = None
    stop_loss: Optional[float] = None
    rationale: Optional[str] = None
    publish_mode: str = "draft"


class PositionRequest(BaseModel):
    symbol: str
    direction: str = "Buy"
    entry_price: Optional[float] = None
    target: Optional[float] = None
    stop_loss: Optional[float] = None
    segment: Optional[str] = None
    expiry: Optional[str] = None
    strike_price: Optional[float] = None
    call_put: Optional[str] = None
    lots: Optional[int] = None
    rationale: Optional[str] = None
    publish_mode: str = "draft"


class EditRequest(BaseModel):
    target: Optional[float] = None
    stop_loss: Optional[float] = None
    rationale: Optional[str] = None


class CloseRequest(BaseModel):
    exit_price: Optional[float] = None
    at_market: bool = False


class CorrectExitRequest(BaseModel):
    exit_price: float


class ConstituentRequest(BaseModel):
    symbol: str
    weight_percent: float
    exchange: str = "NSE"
    quantity: Optional[float] = None
    price_at_rebalance: Optional[float] = None
    action: str = "Buy"


class RebalanceRequest(BaseModel):
    constituents: List[ConstituentRequest]
    notes: Optional[str] = None


@app.get("/")
async def root(request: Request):
    system = getattr(request.app.state, 'system', None)
    return {
        "service": "Advisory Market Data Gateway",
        "version": "1.0.0",
        "status": "running" if system and system.running else "stopped",
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health(request: Request):
    system = getattr(request.app.state, 'system', None)
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": system.running if system else False,
        "token": system.credentials.status() if system else None,
        "cached_quotes": len(system.cache) if system else 0,
    }


@app.get("/api/token/status")
async def token_status(request: Request):
    return _system(request).credentials.status()


@app.post("/api/token")
async def set_token(body: TokenRequest, request: Request):
    return _system(request).credentials.set_manual_token(body.token)


@app.get("/api/quotes/{symbol}")
async def get_quote(symbol: str, request: Request, kind: Optional[str] = None):
    snapshot = await _system(request).gateway.get_quote(symbol, kind)
    if snapshot is None:
        raise HTTPException(status_code=503, detail=f"Quote unavailable for {symbol}")
    return snapshot.as_dict()


@app.post("/api/quotes/bulk")
async def get_bulk_quotes(body: BulkQuoteRequest, request: Request):
    quotes = await _system(request).gateway.get_bulk_quotes([(i.symbol, i.kind) for i in body.items])
    requested = [i.symbol for i in body.items]
    return {
        "quotes": {symbol: snap.as_dict() for symbol, snap in quotes.items()},
        "missing": [s for s in requested if s not in quotes],
        "timestamp": _now(),
    }


@app.get("/api/option-chain/{exchange}/{underlying}")
async def get_option_chain(exchange: str, underlying: str, expiry_date: str, request: Request):
    strikes = await _system(request).gateway.get_option_chain(exchange, underlying, expiry_date)
    return {
        "exchange": exchange.upper(),
        "underlying": underlying.upper(),
        "expiry_date": expiry_date,
        "strikes": [s.as_dict() for s in strikes],
    }


@app.get("/api/option-expiries/{exchange}/{underlying}")
async def get_option_expiries(
    exchange: str,
    underlying: str,
    request: Request,
    year: Optional[int] = None,
    month: Optional[int] = None,
):
    expiries = await _system(request).gateway.get_option_expiries(exchange, underlying, year, month)
    return {"underlying": underlying.upper(), "expiries": expiries}


@app.put("/api/strategies/{strategy_id}")
async def upsert_strategy(strategy_id: str, body: StrategyRequest, request: Request):
    strategy = Strategy(strategy_id, body.advisor_id, body.name, body.type, body.horizon)
    stored = await _system(request).store.upsert_strategy(strategy)
    return stored.to_dict()


@app.post("/api/strategies/{strategy_id}/calls", status_code=201)
async def create_call(
    strategy_id: str,
    body: CallRequest,
    request: Request,
    x_advisor_id: Optional[str] = Header(default=None),
):
    rec = await _system(request).lifecycle.create_call(strategy_id, advisor_id=x_advisor_id, **body.model_dump())
    return rec.to_dict()


@app.post("/api/strategies/{strategy_id}/positions", status_code=201)
async def create_position(
    strategy_id: str,
    body: PositionRequest,
    request: Request,
    x_advisor_id: Optional[str] = Header(default=None),
):
    rec = await _system(request).lifecycle.create_position(
        strategy_id, advisor_id=x_advisor_id, **body.model_dump()
    )
    return rec.to_dict()


@app.get("/api/strategies/{strategy_id}/recommendations")
async def list_for_subscribers(strategy_id: str, request: Request):
    recs = await _system(request).lifecycle.list_for_subscribers(strategy_id)
    return {"recommendations": [r.to_dict() for r in recs], "count": len(recs)}


@app.get("/api/recommendations/{recommendation_id}")
async def get_recommendation(recommendation_id: str, request: Request):
    rec = await _system(request).lifecycle.get(recommendation_id)
    return rec.to_dict()


@app.post("/api/recommendations/{recommendation_id}/publish")
async def publish(recommendation_id: str, request: Request, x_advisor_id: Optional[str] = Header(default=None)):
    rec = await _system(request).lifecycle.publish(recommendation_id, advisor_id=x_advisor_id)
    return rec.to_dict()


@app.patch("/api/recommendations/{recommendation_id}")
async def edit(
    recommendation_id: str,
    body: EditRequest,
    request: Request,
    x_advisor_id: Optional[str] = Header(default=None),
):
    # Only fields present in the request body are edited; an explicit null clears the level.
    changes: Dict[str, Any] = body.model_dump(exclude_unset=True)
    rec = await _system(request).lifecycle.edit(recommendation_id, advisor_id=x_advisor_id, **changes)
    return rec.to_dict()


@app.post("/api/recommendations/{recommendation_id}/close")
async def close(
    recommendation_id: str,
    body: CloseRequest,
    request: Request,
    x_advisor_id: Optional[str] = Header(default=None),
):
    rec = await _system(request).lifecycle.close(
        recommendation_id,
        exit_price=body.exit_price,
        at_market=body.at_market,
        advisor_id=x_advisor_id,
    )
    return rec.to_dict()


@app.post("/api/recommendations/{recommendation_id}/correct-exit")
async def correct_exit(
    recommendation_id: str,
    body: CorrectExitRequest,
    request: Request,
    x_advisor_id: Optional[str] = Header(default=None),
):
    rec = await _system(request).lifecycle.correct_exit_price(
        recommendation_id, body.exit_price, advisor_id=x_advisor_id
    )
    return rec.to_dict()


@app.post("/api/strategies/{strategy_id}/basket", status_code=201)
async def submit_rebalance(strategy_id: str, body: RebalanceRequest, request: Request):
    rebalance = await _system(request).baskets.submit_rebalance(
        strategy_id,
        [c.model_dump() for c in body.constituents],
        notes=body.notes,
    )
    return rebalance.to_dict()


@app.get("/api/strategies/{strategy_id}/basket")
async def current_composition(strategy_id: str, request: Request):
    rebalance = await _system(request).baskets.current_composition(strategy_id)
    if rebalance is None:
        raise HTTPException(status_code=404, detail=f"No basket versions for {strategy_id}")
    return rebalance.to_dict()


@app.get("/api/strategies/{strategy_id}/basket/history")
async def basket_history(strategy_id: str, request: Request):
    history = await _system(request).baskets.history(strategy_id)
    return {"versions": [r.to_dict() for r in history], "count": len(history)}


@app.get("/api/strategies/{strategy_id}/basket/past")
async def past_recommendations(strategy_id: str, request: Request):
    past = await _system(request).baskets.past_recommendations(strategy_id)
    return {"past": [p.to_dict() for p in past], "count": len(past)}


@app.post("/api/square-off/run")
async def run_square_off(request: Request):
    results = await _system(request).scheduler.tick()
    return {
        "closed": [
            {
                "id": r.recommendation_id,
                "strategy_id": r.strategy_id,
                "name": r.name,
                "exit_price": r.exit_price,
                "gain_percent": r.gain_percent,
                "tier": r.tier.value,
            }
            for r in results
        ],
        "timestamp": _now(),
    }


if __name__ == "__main__":
    import uvicorn
    api_cfg = get_config_section(config, 'api')
    setup_logging(get_config_section(config, 'monitoring').get('log_level') or 'INFO')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info",
    )
