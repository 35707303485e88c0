"""
Trait Inference Engine: Reporting API Server
============================================

Read-only API over the run ledger and budget ledgers.
Nothing here ingests events or triggers runs.

Endpoints:
- GET /health                                  -> Queue and run counts
- GET /api/v1/subjects/{subject_id}/consensus  -> Latest consensus (?framework= narrows traits)
- GET /api/v1/subjects/{subject_id}/runs       -> Run history
- GET /api/v1/subjects/{subject_id}/report     -> Report ("insufficient confidence" when degraded)
- GET /api/v1/organizations/{org_id}/budget    -> Token budget status

Usage:
    uvicorn backend.api.server:app
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional
import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from models.contracts import ErrorCode, Framework, TraitEngineError

from ..aggregation import StaticConsent
from ..contracts.base import TimeRange
from ..engine import EngineConfig, TraitInferenceEngine

logger = logging.getLogger(__name__)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class TraitScoreModel(BaseModel):
    score: float
    confidence: float
    models_used: int


class ConsensusModel(BaseModel):
    run_id: str
    subject_id: str
    traits: Dict[str, TraitScoreModel]
    aggregate_confidence: float
    contributing_models: List[str]
    degraded: bool
    degradation_reason: Optional[str] = None
    total_tokens: int = 0


class RunModel(BaseModel):
    run_id: str
    subject_id: str
    organization_id: str
    period_start: datetime
    period_end: datetime
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    models_invoked: List[str]
    tokens_spent: int
    escalated: bool
    escalation_reasons: List[str]
    degraded: bool
    error_detail: Optional[str] = None
    attempt: int = 1


class ReportModel(BaseModel):
    subject_id: str
    status: str
    message: Optional[str] = None
    consensus: Optional[ConsensusModel] = None


class BudgetModel(BaseModel):
    organization_id: str
    period_month: str
    allocated: int
    spent: int
    reserved: int
    remaining: int
    available: int
    halted: bool


_STATUS_BY_CODE = {
    ErrorCode.RUN_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_RUN: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.BUDGET_LEDGER_CORRUPTION: 503,
}


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(engine: Optional[TraitInferenceEngine] = None) -> FastAPI:
    """
    Build the API around an engine.

    Without an engine, one is created from TIE_* environment variables
    on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        if owned:
            config = EngineConfig.from_env()
            logger.info("Initializing engine (ledger: %s)", config.ledger_path)
            app.state.engine = TraitInferenceEngine(StaticConsent(), config=config)
            app.state.engine.recover_stale_runs()
        else:
            app.state.engine = engine
        yield
        if owned:
            logger.info("Shutting down engine")
            app.state.engine.close()
        app.state.engine = None

    app = FastAPI(
        title="Trait Inference Engine API",
        version="0.1.0",
        description="Read-only reporting surface for consensus trait scores",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],  # STRICT READ-ONLY
        allow_headers=["*"],
    )

    @app.exception_handler(TraitEngineError)
    async def engine_error_handler(request: Request, exc: TraitEngineError):
        status = _STATUS_BY_CODE.get(exc.code, 500)
        return JSONResponse(
            status_code=status,
            content={"detail": exc.message, "code": exc.code.value},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    def _engine(request: Request) -> TraitInferenceEngine:
        current = request.app.state.engine
        if current is None:
            raise HTTPException(status_code=503, detail="Engine not initialized")
        return current

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health")
    def health_check(request: Request):
        """System status."""
        current = _engine(request)
        return {"status": "online", **current.queue_stats()}

    @app.get("/api/v1/subjects/{subject_id}/consensus", response_model=ConsensusModel)
    def get_latest_consensus(
        subject_id: str,
        request: Request,
        framework: Optional[Framework] = Query(default=None),
    ):
        consensus = _engine(request).get_latest_consensus(subject_id, framework)
        if consensus is None:
            raise HTTPException(status_code=404, detail="No consensus for subject")
        return consensus.to_dict()

    @app.get("/api/v1/subjects/{subject_id}/runs", response_model=List[RunModel])
    def get_run_history(
        subject_id: str,
        request: Request,
        start: Optional[datetime] = Query(default=None),
        end: Optional[datetime] = Query(default=None),
    ):
        time_range = None
        if start is not None or end is not None:
            try:
                time_range = TimeRange.between(
                    start or datetime.min, end or datetime.max
                )
            except ValueError:
                raise HTTPException(status_code=400, detail="start must not be after end")
        runs = _engine(request).get_run_history(subject_id, time_range)
        return [r.to_dict() for r in runs]

    @app.get("/api/v1/subjects/{subject_id}/report", response_model=ReportModel)
    def get_subject_report(
        subject_id: str,
        request: Request,
        framework: Optional[Framework] = Query(default=None),
    ):
        return _engine(request).get_subject_report(subject_id, framework).to_dict()

    @app.get("/api/v1/organizations/{organization_id}/budget", response_model=BudgetModel)
    def get_budget_status(
        organization_id: str,
        request: Request,
        month: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    ):
        return _engine(request).get_org_budget_status(organization_id, month).to_dict()

    return app


app = create_app()
