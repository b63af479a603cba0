"""
Query API over the projected tables and the aggregation engine.

uint256 values go out as decimal strings; JSON numbers can't hold them.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from web3 import Web3

from aggregator import AggregationEngine
from chain import aux_chains_from_settings, read_aux_balances
from exceptions import AggregationError
from store import queries
from store.db import close_db, init_db


def _check_address(value: str) -> str:
    if not Web3.is_address(value):
        raise HTTPException(status_code=400, detail=f"Not an address: {value}")
    return value.lower()


def create_app(engine: AggregationEngine, init_database: bool = True, aux_chains=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_database:
            await init_db()
        try:
            yield
        finally:
            await app.state.engine.reader.close()
            if init_database:
                await close_db()

    app = FastAPI(title="Refundable Token Sale Indexer", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.state.engine = engine
    app.state.aux_chains = aux_chains if aux_chains is not None else aux_chains_from_settings()

    @app.exception_handler(AggregationError)
    async def aggregation_failed(request, exc: AggregationError):
        return JSONResponse(status_code=502, content={"error": str(exc), "token": exc.token})

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Indexer running"

    @app.get("/deployments")
    async def deployments(limit: int = Query(50, ge=1, le=500)):
        rows = await queries.list_deployments(limit=limit)
        return {"items": [d.to_dict() for d in rows]}

    @app.get("/sale-activity")
    async def sale_activity(token: Optional[str] = None):
        if token:
            token = _check_address(token)
        rows = await queries.list_sale_activity(token)
        return {"items": [a.to_dict() for a in rows]}

    @app.get("/sales/{token}/config")
    async def sale_config(token: str):
        cfg = await queries.current_sale_config(_check_address(token))
        if cfg is None:
            raise HTTPException(status_code=404, detail="No sale for token.")
        history = await queries.sale_config_history(cfg.token_address)
        return {"current": cfg.to_dict(), "history": [c.to_dict() for c in history[1:]]}

    @app.get("/sales/{token}")
    async def sale_summary(token: str):
        summary = await app.state.engine.aggregate_sale(_check_address(token))
        if summary is None:
            raise HTTPException(status_code=404, detail="No sale for token.")
        return summary.to_dict()

    @app.get("/sales/{token}/stats")
    async def sale_stats(token: str, refunds_from_chain: bool = False):
        row = await app.state.engine.aggregate_stats(_check_address(token), refunds_from_chain=refunds_from_chain)
        if row is None:
            raise HTTPException(status_code=404, detail="No sale for token.")
        return row.to_dict()

    @app.get("/sale-details")
    async def sale_details():
        details = await app.state.engine.sale_details()
        return {
            "items": [s.to_dict() for s in details["items"]],
            "errors": [f.to_dict() for f in details["errors"]],
            "latestBlockNumber": str(details["latestBlockNumber"]),
            "blockTimeSeconds": details["blockTimeSeconds"],
        }

    @app.get("/balances/{account}")
    async def balances(account: str):
        account = _check_address(account)
        rows = await read_aux_balances(account, app.state.aux_chains)
        return {
            "items": [
                {
                    "chain": r.chain,
                    "balance": str(r.balance) if r.available else None,
                    "decimals": r.decimals,
                    "configured": r.configured,
                }
                for r in rows
            ]
        }

    return app
