"""
Gatekeeper API

FastAPI application exposing:
- POST /score → stateless scoring of a signal snapshot
- /sessions/{token}/... → remote telemetry tracking (start, events, peek, stop)
- /attempts, /export, /import → attempt ledger review and portability
- /thresholds → live challenge/block cutoffs
- /experiments → threshold A/B experiments

Storage backend is selected by GATEKEEPER_STORAGE (redis | memory).
"""

from contextlib import asynccontextmanager
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from core.exceptions import GatekeeperError, UnknownExperimentError, ValidationError
from core.experiments import ExperimentEngine
from core.orchestrator import GatekeeperOrchestrator
from core.sessions import NoActiveSessionError
from core.schemas.inputs import (
    AssignPayload,
    ExperimentCreatePayload,
    ExperimentResultPayload,
    FalsePositivePayload,
    InteractionStreamPayload,
    PromotePayload,
    SessionClockPayload,
    SessionStartPayload,
    SignalSnapshot,
    SignificanceMetric,
    ThresholdConfig,
)
from core.schemas.outputs import (
    Assignment,
    Attempt,
    Experiment,
    ExperimentSummary,
    LedgerExport,
    LedgerStats,
    ScoringOutcome,
    SessionScoreResponse,
    SignificanceResult,
    ThresholdRecommendation,
    WinnerRecommendation,
)
from persistence.attempt_ledger import AttemptLedger
from persistence.experiment_repository import ExperimentRepository
from persistence.storage import build_store
from persistence.threshold_store import ThresholdStore


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


VERSION = "1.0.0"


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    orchestrator: Optional[GatekeeperOrchestrator] = None
    experiments: Optional[ExperimentEngine] = None
    ledger: Optional[AttemptLedger] = None
    thresholds: Optional[ThresholdStore] = None


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Gatekeeper API...")
    load_dotenv()

    store = build_store()
    capacity = int(os.getenv("GATEKEEPER_LEDGER_CAPACITY", AttemptLedger.DEFAULT_CAPACITY))

    state.thresholds = ThresholdStore(store)
    state.ledger = AttemptLedger(store, state.thresholds, capacity=capacity)
    state.experiments = ExperimentEngine(ExperimentRepository(store), state.thresholds)
    state.orchestrator = GatekeeperOrchestrator(
        ledger=state.ledger,
        thresholds=state.thresholds,
        experiments=state.experiments
    )
    logger.info(f"Gatekeeper ready (ledger capacity {capacity})")

    yield

    # Shutdown
    logger.info("Shutting down Gatekeeper API...")
    state.orchestrator.sessions.close_all()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Gatekeeper",
    description="Behavioral bot scoring and threshold experimentation",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map a core exception onto an HTTP error."""
    if isinstance(e, UnknownExperimentError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.error(f"{action} error: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal error during {action}"
    )


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse
    return RedirectResponse(url="/docs")


# =============================================================================
# Scoring
# =============================================================================

@app.post("/score", response_model=ScoringOutcome)
async def score(snapshot: SignalSnapshot):
    """Score a raw signal snapshot. Nothing is recorded."""
    return state.orchestrator.score(snapshot)


# =============================================================================
# Tracking Sessions
# =============================================================================

@app.post("/sessions/{token}/start", status_code=status.HTTP_204_NO_CONTENT)
async def start_session(token: str, payload: Optional[SessionStartPayload] = None):
    """
    Begin tracking a session.

    - Starting an already-tracking session is a no-op
    - started_at puts elapsed duration on the client's clock
    """
    started_at = payload.started_at if payload else None
    state.orchestrator.start_session(token, started_at)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/sessions/{token}/events", status_code=status.HTTP_204_NO_CONTENT)
async def stream_events(token: str, payload: InteractionStreamPayload):
    """Ingest an ordered batch of interaction events. Never returns a decision."""
    try:
        state.orchestrator.stream_events(token, payload.events)
    except NoActiveSessionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/sessions/{token}/peek", response_model=ScoringOutcome)
async def peek_session(token: str, payload: Optional[SessionClockPayload] = None):
    """Score the session so far (pre-submit gating)."""
    outcome = state.orchestrator.peek_session(token, payload.now if payload else None)
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active tracking session for {token}"
        )
    return outcome


@app.post("/sessions/{token}/stop", response_model=SessionScoreResponse)
async def stop_session(token: str, payload: Optional[SessionClockPayload] = None):
    """
    Finalize a session.

    - Records the attempt in the ledger
    - Routes it to the active experiment, if any
    - Returns the decision under the live or assigned thresholds
    """
    result = state.orchestrator.stop_session(token, payload.now if payload else None)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active tracking session for {token}"
        )
    return result


# =============================================================================
# Attempt Ledger
# =============================================================================

@app.get("/attempts", response_model=List[Attempt])
async def list_attempts():
    return state.ledger.list()


@app.delete("/attempts", status_code=status.HTTP_204_NO_CONTENT)
async def clear_attempts():
    try:
        state.ledger.clear()
    except GatekeeperError as e:
        raise _http_error(e, "ledger clear")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/attempts/stats", response_model=LedgerStats)
async def attempt_stats():
    return state.ledger.stats()


@app.get("/attempts/recommendation", response_model=Optional[ThresholdRecommendation])
async def threshold_recommendation():
    """Threshold tuning advice; null when there is not enough evidence."""
    return state.ledger.threshold_recommendation()


@app.patch("/attempts/{attempt_id}", response_model=Attempt)
async def mark_false_positive(attempt_id: str, payload: FalsePositivePayload):
    """Reviewer correction; experiment counters follow the flag."""
    try:
        attempt = state.orchestrator.mark_false_positive(attempt_id, payload.is_false_positive)
    except GatekeeperError as e:
        raise _http_error(e, "false positive update")

    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown attempt: {attempt_id}"
        )
    return attempt


# =============================================================================
# Export / Import
# =============================================================================

@app.get("/export", response_model=LedgerExport)
async def export_ledger():
    return state.orchestrator.export()


@app.get("/export.csv", response_class=PlainTextResponse)
async def export_ledger_csv():
    return PlainTextResponse(
        content=state.orchestrator.export_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=bot-attempts.csv"}
    )


@app.post("/import", response_model=LedgerStats)
async def import_ledger(payload: LedgerExport):
    """Restore thresholds and attempts from a JSON export."""
    try:
        return state.orchestrator.import_export(payload)
    except GatekeeperError as e:
        raise _http_error(e, "import")


# =============================================================================
# Thresholds
# =============================================================================

@app.get("/thresholds", response_model=ThresholdConfig)
async def get_thresholds():
    return state.thresholds.get()


@app.put("/thresholds", response_model=ThresholdConfig)
async def set_thresholds(payload: ThresholdConfig):
    """Replace the live thresholds. An invalid pair (challenge >= block) is a 422."""
    try:
        return state.thresholds.set(payload)
    except GatekeeperError as e:
        raise _http_error(e, "threshold update")


@app.post("/thresholds/reset", response_model=ThresholdConfig)
async def reset_thresholds():
    try:
        return state.thresholds.reset()
    except GatekeeperError as e:
        raise _http_error(e, "threshold reset")


# =============================================================================
# Experiments
# =============================================================================

@app.post("/experiments", response_model=Experiment, status_code=status.HTTP_201_CREATED)
async def create_experiment(payload: ExperimentCreatePayload):
    """Start an experiment. Only one experiment may be active."""
    try:
        return state.experiments.create(
            name=payload.name,
            control=payload.control,
            variant=payload.variant,
            traffic_split=payload.traffic_split,
            min_sample_size=payload.min_sample_size
        )
    except GatekeeperError as e:
        raise _http_error(e, "experiment creation")


@app.get("/experiments", response_model=List[Experiment])
async def list_experiments():
    return state.experiments.list()


@app.get("/experiments/active", response_model=Optional[Experiment])
async def active_experiment():
    return state.experiments.active()


@app.get("/experiments/{experiment_id}", response_model=Experiment)
async def get_experiment(experiment_id: str):
    try:
        return state.experiments.get(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "experiment lookup")


@app.delete("/experiments/{experiment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_experiment(experiment_id: str):
    try:
        state.experiments.delete(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "experiment deletion")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/experiments/{experiment_id}/pause", response_model=Experiment)
async def pause_experiment(experiment_id: str):
    try:
        return state.experiments.pause(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "experiment pause")


@app.post("/experiments/{experiment_id}/resume", response_model=Experiment)
async def resume_experiment(experiment_id: str):
    try:
        return state.experiments.resume(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "experiment resume")


@app.post("/experiments/{experiment_id}/complete", response_model=Experiment)
async def complete_experiment(experiment_id: str):
    try:
        return state.experiments.complete(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "experiment completion")


@app.post("/experiments/{experiment_id}/assign", response_model=Assignment)
async def assign_variant(experiment_id: str, payload: AssignPayload):
    """Sticky arm assignment for a session token."""
    try:
        state.experiments.get(experiment_id)
        arm = state.experiments.assign(experiment_id, payload.session_token)
    except GatekeeperError as e:
        raise _http_error(e, "assignment")

    if arm is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Experiment {experiment_id} is not active"
        )
    return Assignment(experiment_id=experiment_id, variant=arm)


@app.post("/experiments/{experiment_id}/results", response_model=Experiment)
async def record_result(experiment_id: str, payload: ExperimentResultPayload):
    try:
        return state.experiments.record_result(
            experiment_id,
            payload.variant,
            payload.score,
            payload.confidence,
            payload.recommendation,
            payload.is_false_positive
        )
    except GatekeeperError as e:
        raise _http_error(e, "result recording")


@app.get("/experiments/{experiment_id}/significance", response_model=SignificanceResult)
async def experiment_significance(
    experiment_id: str,
    metric: SignificanceMetric = SignificanceMetric.FALSE_POSITIVES
):
    try:
        return state.experiments.significance(experiment_id, metric)
    except GatekeeperError as e:
        raise _http_error(e, "significance")


@app.get("/experiments/{experiment_id}/recommendation", response_model=WinnerRecommendation)
async def experiment_recommendation(experiment_id: str):
    try:
        return state.experiments.winner_recommendation(experiment_id)
    except GatekeeperError as e:
        raise _http_error(e, "winner recommendation")


@app.get("/experiments/{experiment_id}/summary", response_model=ExperimentSummary)
async def experiment_summary(experiment_id: str):
    """Experiment with significance for every metric and the winner recommendation."""
    try:
        experiment = state.experiments.get(experiment_id)
        return ExperimentSummary(
            experiment=experiment,
            significance={
                metric.value: state.experiments.significance(experiment, metric)
                for metric in SignificanceMetric
            },
            recommendation=state.experiments.winner_recommendation(experiment)
        )
    except GatekeeperError as e:
        raise _http_error(e, "experiment summary")


@app.post("/experiments/{experiment_id}/promote", response_model=ThresholdConfig)
async def promote_experiment(experiment_id: str, payload: Optional[PromotePayload] = None):
    """Copy an arm's thresholds into production; the recommended winner by default."""
    try:
        return state.experiments.promote(experiment_id, payload.arm if payload else None)
    except GatekeeperError as e:
        raise _http_error(e, "promotion")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
