"""
propfirm_api.py — FastAPI server exposing the prop firm engine.

Endpoints:
    POST /evaluate                     — onboard an address (signature + track record)
    POST /agents/{id}/authorize        — pre-trade admission check
    POST /agents/{id}/orders           — count submitted orders toward the quota
    POST /agents/{id}/fills            — apply a settled fill to the profit ledger
    POST /agents/{id}/baseline         — capture initial capital if it is still zero
    GET  /agents                       — roster (?status=active|revoked|all)
    GET  /agents/{id}                  — one agent
    GET  /agents/{id}/positions        — live positions of the assigned account
    GET  /agents/{id}/open_orders      — live open orders of the assigned account
    GET  /stats/{id}                   — agent + live balance + risk gates
    GET  /market/{coin}                — live asset context for a coin
    GET  /funding/{coin}               — predicted funding rates per venue
    GET  /pool                         — wallet pool utilization
    GET  /health                       — liveness

Usage:
    uvicorn propfirm_api:app --port 3000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from allocation_engine import OnboardOutcome
from errors import (
    CapacityExhaustedError,
    ConflictError,
    DependencyUnavailableError,
    ForbiddenError,
    NotFoundError,
    PropFirmError,
)
from prop_firm import PropFirm
from trade_gate import GateOutcome


RETRY_AFTER_SECONDS = "60"

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
SIGNATURE_PATTERN = r"^0x[a-fA-F0-9]+$"

_ONBOARD_STATUS = {
    OnboardOutcome.APPROVED: 200,
    OnboardOutcome.APPROVED_BYPASS: 200,
    OnboardOutcome.ALREADY_REGISTERED: 200,
    OnboardOutcome.UNAUTHORIZED: 401,
    OnboardOutcome.REJECTED: 403,
    OnboardOutcome.NO_CAPACITY: 503,
}

_GATE_STATUS = {
    GateOutcome.AUTHORIZED: 200,
    GateOutcome.NOT_FOUND: 404,
    GateOutcome.FORBIDDEN: 403,
    GateOutcome.RATE_LIMITED: 429,
}

_ERROR_STATUS = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (ForbiddenError, 403),
    (CapacityExhaustedError, 503),
    (DependencyUnavailableError, 503),
]


# ─── Request Models ───────────────────────────────────────────────────────────

class EvaluateRequest(BaseModel):
    address: str = Field(pattern=ADDRESS_PATTERN)
    signature: str = Field(pattern=SIGNATURE_PATTERN)


class AuthorizeRequest(BaseModel):
    order_count: int = Field(default=1, ge=1)


class OrdersRequest(BaseModel):
    count: int = Field(default=1, ge=1)


class FillRequest(BaseModel):
    fill_id: str = Field(min_length=1)
    closed_pnl: Decimal = Field(allow_inf_nan=False)


# ─── App & Global Firm ────────────────────────────────────────────────────────

_firm: Optional[PropFirm] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # The exchange's HTTP client lives on the server's loop; close it there.
    if _firm is not None:
        await _firm.close()


app = FastAPI(
    title="Prop Firm Engine API",
    description="Agent onboarding, funded wallet allocation and trade admission",
    version="1.0.0",
    lifespan=lifespan,
)


def get_firm() -> PropFirm:
    """Return the global firm instance (set at startup by main.py)."""
    if _firm is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return _firm


def set_firm(firm: Optional[PropFirm]) -> None:
    """Install the global firm (startup, and tests)."""
    global _firm
    _firm = firm


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.post("/evaluate")
async def evaluate(req: EvaluateRequest) -> JSONResponse:
    """Verify ownership, score the track record and assign a funded wallet."""
    firm = get_firm()
    result = await firm.evaluate(req.address, req.signature)
    body = result.to_dict()
    headers = {}
    if result.outcome is OnboardOutcome.UNAUTHORIZED:
        body["expected_message"] = firm.auth_message(req.address)
    if result.outcome is OnboardOutcome.NO_CAPACITY:
        headers["Retry-After"] = RETRY_AFTER_SECONDS
    return JSONResponse(status_code=_ONBOARD_STATUS[result.outcome], content=body, headers=headers)


@app.post("/agents/{agent_id}/authorize")
async def authorize(agent_id: str, req: Optional[AuthorizeRequest] = None) -> JSONResponse:
    order_count = req.order_count if req is not None else 1
    decision = await get_firm().authorize(agent_id, order_count)
    return JSONResponse(status_code=_GATE_STATUS[decision.outcome], content=decision.to_dict())


@app.post("/agents/{agent_id}/orders")
async def record_orders(agent_id: str, req: Optional[OrdersRequest] = None) -> Dict[str, Any]:
    count = req.count if req is not None else 1
    agent = await get_firm().record_orders(agent_id, count)
    return {"ok": True, "agent": agent.to_dict()}


@app.post("/agents/{agent_id}/fills")
async def apply_fill(agent_id: str, req: FillRequest) -> Dict[str, Any]:
    entry = await get_firm().apply_fill(agent_id, req.closed_pnl, req.fill_id)
    return entry.to_dict()


@app.post("/agents/{agent_id}/baseline")
async def refresh_baseline(agent_id: str) -> Dict[str, Any]:
    agent = await get_firm().refresh_baseline(agent_id)
    return {"ok": True, "agent": agent.to_dict()}


@app.get("/agents")
async def list_agents(status: str = "all") -> Dict[str, Any]:
    try:
        agents = get_firm().list_agents(status)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"count": len(agents), "agents": [a.to_dict() for a in agents]}


@app.get("/agents/{agent_id}")
async def get_agent(agent_id: str) -> Dict[str, Any]:
    agent = get_firm().get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return agent.to_dict()


@app.get("/agents/{agent_id}/positions")
async def positions(agent_id: str) -> Dict[str, Any]:
    return await get_firm().positions(agent_id)


@app.get("/agents/{agent_id}/open_orders")
async def open_orders(agent_id: str) -> Dict[str, List[Dict[str, Any]]]:
    return {"open_orders": await get_firm().open_orders(agent_id)}


@app.get("/stats/{agent_id}")
async def agent_stats(agent_id: str) -> Dict[str, Any]:
    return await get_firm().agent_stats(agent_id)


@app.get("/market/{coin}")
async def market(coin: str) -> Dict[str, Any]:
    return await get_firm().market(coin)


@app.get("/funding/{coin}")
async def funding(coin: str) -> Dict[str, Any]:
    return await get_firm().funding(coin)


@app.get("/pool")
async def pool() -> Dict[str, int]:
    return get_firm().pool_utilization()


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Simple health check."""
    firm = get_firm()
    return {"status": "ok", "pool": firm.pool_utilization()}


# ─── Error Handlers ───────────────────────────────────────────────────────────

@app.exception_handler(PropFirmError)
async def propfirm_error_handler(request: Any, exc: PropFirmError) -> JSONResponse:
    status = 500
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            status = code
            break
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else None
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
        headers=headers,
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Any, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "validation", "detail": str(exc)})
