"""Scheduler trigger routes for the arena.

Every route runs one engine pass and returns its summary. When CRON_SECRET
is configured, callers must send it as a bearer token.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from llm_service.config import get_settings

from .engine import ArenaEngine
from .errors import CycleAborted
from .market_data import MarketPayload, upsert_market

logger = logging.getLogger(__name__)


class CohortStartRequest(BaseModel):
    """Body for POST /cohorts/start."""
    force: bool = Field(default=False, description="Skip schedule and active-cohort checks")


class MarketSyncRequest(BaseModel):
    """Body for POST /markets/sync pushed by the external feed job."""
    markets: list[MarketPayload] = Field(default_factory=list)


def get_engine(request: Request) -> ArenaEngine:
    """The engine created by the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Arena engine not initialized")
    return engine


def verify_cron_secret(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    """Reject requests without the bearer secret from the app's settings."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    expected = settings.cron_secret
    if not expected:
        return
    supplied = ""
    if authorization and authorization.startswith("Bearer "):
        supplied = authorization[len("Bearer "):]
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("Rejected trigger request with invalid credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(
    prefix="/api/arena",
    tags=["Arena"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/decisions/run")
async def run_decisions(engine: ArenaEngine = Depends(get_engine)) -> dict:
    """Run one decision cycle for all active agents."""
    logger.info("Decision cycle triggered")
    try:
        summary = await engine.run_decision_cycle()
    except CycleAborted as e:
        raise HTTPException(status_code=503, detail=e.message)
    return summary.to_dict()


@router.post("/snapshots/run")
def run_snapshots(engine: ArenaEngine = Depends(get_engine)) -> dict:
    """Settle resolved markets, then snapshot every active agent."""
    logger.info("Snapshot sweep triggered")
    try:
        summary = engine.run_snapshot_sweep()
    except CycleAborted as e:
        raise HTTPException(status_code=503, detail=e.message)
    return summary.to_dict()


@router.post("/resolutions/run")
def run_resolutions(engine: ArenaEngine = Depends(get_engine)) -> dict:
    """Settle resolved and cancelled markets."""
    logger.info("Settlement pass triggered")
    try:
        summary = engine.run_settlement_pass()
    except CycleAborted as e:
        raise HTTPException(status_code=503, detail=e.message)
    return summary.to_dict()


@router.post("/cohorts/start")
def start_cohort(
    body: CohortStartRequest | None = None,
    engine: ArenaEngine = Depends(get_engine),
) -> dict:
    """Start this week's cohort."""
    force = body.force if body else False
    logger.info("Cohort start triggered", extra={"force": force})
    return engine.start_cohort(force=force).to_dict()


@router.post("/markets/sync")
def sync_markets(body: MarketSyncRequest, engine: ArenaEngine = Depends(get_engine)) -> dict:
    """Upsert market records into the local mirror."""
    with engine.database.session() as session:
        for payload in body.markets:
            upsert_market(session, payload)
    logger.info(f"Synced {len(body.markets)} markets")
    return {"markets_synced": len(body.markets)}
