"""FastAPI application entry point for the trace evaluation service.

This module provides:
- Application factory wiring the store, aggregator, executor and job service
- Langfuse-compatible public ingestion, trace and score endpoints
- Dify workflow webhook endpoint
- Evaluation job endpoints, score summaries and project statistics
- Error handling with a consistent error envelope
- Request logging and timing middleware
"""

import asyncio
import base64
import binascii
import hmac
import json
import math
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from traceval import __version__
from traceval.evaluator import EvaluationExecutor, ProviderFactory
from traceval.ingestion import IngestionAggregator, IngestionError
from traceval.jobs import EvalJobService, JobCreationError, job_summary
from traceval.models import (
    EvalJobCreateRequest,
    EvalJobCreateResponse,
    EvalJobStatus,
    ErrorResponse,
    HealthResponse,
    IngestionResponse,
    ParseTier,
    Score,
    ScoreCreateRequest,
    TimeRange,
)
from traceval.prompts import preset_evaluators
from traceval.providers import PROVIDER_CLASSES, ProviderError
from traceval.results import ResultsAggregator
from traceval.store import InMemoryStore, JobStateError, PresetEvaluatorError, StoreError
from traceval.utils import (
    ConfigurationError,
    generate_id,
    get_config,
    get_current_timestamp,
    initialize_app,
)
from traceval.webhook import SIGNATURE_HEADER, WebhookSignatureError, convert_dify_to_trace, verify_signature


router = APIRouter()


# ==================== DEPENDENCIES ====================

def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_aggregator(request: Request) -> IngestionAggregator:
    return request.app.state.aggregator


def get_job_service(request: Request) -> EvalJobService:
    return request.app.state.job_service


def get_results(request: Request) -> ResultsAggregator:
    return request.app.state.results


def authenticate_ingestion(request: Request) -> str:
    """
    Validate Basic credentials on the public API.

    Credentials are checked against INGESTION_PUBLIC_KEY/INGESTION_SECRET_KEY
    when both are configured; otherwise any well-formed pair is accepted.

    Returns:
        str: Project the caller writes to

    Raises:
        HTTPException: 401 on missing or invalid credentials
    """
    config = get_config()
    header = request.headers.get("Authorization", "")
    unauthorized = HTTPException(
        status_code=401,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Basic"}
    )

    if not header.startswith("Basic "):
        raise unauthorized
    try:
        decoded = base64.b64decode(header[len("Basic "):].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise unauthorized

    public_key, _, secret_key = decoded.partition(":")
    if not public_key or not secret_key:
        raise unauthorized

    expected_public = config["INGESTION_PUBLIC_KEY"]
    expected_secret = config["INGESTION_SECRET_KEY"]
    if expected_public and expected_secret:
        valid = (hmac.compare_digest(public_key.encode("utf-8"), expected_public.encode("utf-8"))
                 and hmac.compare_digest(secret_key.encode("utf-8"), expected_secret.encode("utf-8")))
        if not valid:
            logger.warning("Rejected ingestion credentials", public_key=public_key)
            raise unauthorized

    return config["DEFAULT_PROJECT_ID"]


def _page_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "totalItems": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


# ==================== PUBLIC INGESTION API ====================

@router.post("/api/public/ingestion", response_model=IngestionResponse)
async def ingest_batch(
    request: Request,
    project_id: str = Depends(authenticate_ingestion),
    aggregator: IngestionAggregator = Depends(get_aggregator)
) -> IngestionResponse:
    """
    Accept a Langfuse-style event batch.

    Events are grouped by trace and merged idempotently; every event is
    acknowledged individually.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise IngestionError("Request body is not valid JSON")

    events = aggregator.parse_batch(payload)
    return await aggregator.ingest(events, project_id)


@router.get("/api/public/traces")
async def list_traces(
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    project_id: str = Depends(authenticate_ingestion),
    store: InMemoryStore = Depends(get_store)
):
    traces = await store.list_traces(project_id, limit=limit, offset=(page - 1) * limit)
    total = await store.count_traces(project_id)
    return {
        "data": [t.model_dump(mode="json") for t in traces],
        "meta": _page_meta(page, limit, total),
    }


@router.get("/api/public/traces/{trace_id}")
async def get_trace(
    trace_id: str,
    project_id: str = Depends(authenticate_ingestion),
    store: InMemoryStore = Depends(get_store)
):
    trace = await store.get_trace(trace_id)
    if trace is None or trace.project_id != project_id:
        raise HTTPException(status_code=404, detail=f"Trace '{trace_id}' not found")
    return trace.model_dump(mode="json")


@router.get("/api/public/scores")
async def list_scores(
    trace_id: Optional[str] = Query(None, alias="traceId"),
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    project_id: str = Depends(authenticate_ingestion),
    store: InMemoryStore = Depends(get_store)
):
    scores = await store.list_scores(project_id, trace_id=trace_id, limit=limit, offset=(page - 1) * limit)
    total = await store.count_scores(project_id, trace_id=trace_id)
    return {
        "data": [s.model_dump(mode="json") for s in scores],
        "meta": _page_meta(page, limit, total),
    }


@router.post("/api/public/scores")
async def create_score(
    score_request: ScoreCreateRequest,
    project_id: str = Depends(authenticate_ingestion),
    store: InMemoryStore = Depends(get_store)
):
    """Record a manually submitted score for an existing trace."""
    trace = await store.get_trace(score_request.trace_id)
    if trace is None or trace.project_id != project_id:
        raise HTTPException(status_code=404, detail=f"Trace '{score_request.trace_id}' not found")

    score = Score(
        id=generate_id("score"),
        trace_id=trace.id,
        project_id=trace.project_id,
        evaluator_id=f"api-{score_request.name}",
        evaluator_name=score_request.name,
        score=score_request.value,
        reason=score_request.comment,
        parse_tier=ParseTier.EXACT,
        source="api",
    )
    await store.add_score(score)
    logger.info("Score recorded via public API", trace_id=trace.id, name=score_request.name)
    return {"id": score.id}


# ==================== WEBHOOK ====================

@router.post("/api/v1/traces/webhook/{connection_id}")
async def receive_dify_webhook(
    connection_id: str,
    request: Request,
    aggregator: IngestionAggregator = Depends(get_aggregator)
):
    """Receive a Dify workflow run and store it as a trace."""
    raw_body = await request.body()
    verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), get_config()["DIFY_WEBHOOK_SECRET"])

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")

    trace = convert_dify_to_trace(connection_id, payload)
    await aggregator.upsert_trace(trace)

    return {
        "success": True,
        "traceId": trace.id,
        "message": "Webhook received",
    }


# ==================== EVALUATION JOBS ====================

@router.post("/api/eval-jobs", response_model=EvalJobCreateResponse)
async def create_eval_job(
    job_request: EvalJobCreateRequest,
    job_service: EvalJobService = Depends(get_job_service)
) -> EvalJobCreateResponse:
    """
    Evaluate traces with a set of evaluators and return the finished job.

    Rejected requests (no active evaluator, unknown LLM config, no traces)
    return 400 and create no job.
    """
    return await job_service.create_job(job_request)


@router.get("/api/eval-jobs")
async def list_eval_jobs(
    project_id: str = Query(..., alias="projectId", min_length=1),
    status: Optional[EvalJobStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    job_service: EvalJobService = Depends(get_job_service)
):
    return await job_service.list_jobs(project_id, status=status, limit=limit, offset=offset)


@router.get("/api/eval-jobs/{job_id}")
async def get_eval_job(job_id: str, job_service: EvalJobService = Depends(get_job_service)):
    job = await job_service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Evaluation job '{job_id}' not found")
    return job_summary(job)


@router.get("/api/eval-jobs/{job_id}/summary")
async def get_eval_job_summary(
    job_id: str,
    store: InMemoryStore = Depends(get_store),
    results: ResultsAggregator = Depends(get_results)
):
    if await store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Evaluation job '{job_id}' not found")
    return await results.job_summary(job_id)


@router.get("/api/eval-jobs/{job_id}/results")
async def get_eval_job_results(
    job_id: str,
    store: InMemoryStore = Depends(get_store),
    results: ResultsAggregator = Depends(get_results)
):
    if await store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Evaluation job '{job_id}' not found")
    return {"jobId": job_id, "traces": await results.job_results_by_trace(job_id)}


@router.get("/api/traces/{trace_id}/scores")
async def get_trace_scores(trace_id: str, results: ResultsAggregator = Depends(get_results)):
    return await results.trace_scores(trace_id)


@router.get("/api/statistics")
async def get_statistics(
    project_id: str = Query(..., alias="projectId", min_length=1),
    time_range: TimeRange = Query(TimeRange.WEEK, alias="timeRange"),
    results: ResultsAggregator = Depends(get_results)
):
    """Trace volume, latency and score statistics of a project's dashboard."""
    return await results.project_statistics(project_id, time_range)


# ==================== HEALTH ====================

@router.get("/health", response_model=HealthResponse)
async def health_check(store: InMemoryStore = Depends(get_store)) -> HealthResponse:
    """Report store counters and evaluation configuration."""
    config = get_config()
    metrics = await store.get_metrics()
    return HealthResponse(
        status="healthy",
        timestamp=get_current_timestamp(),
        version=__version__,
        checks={
            "store": metrics.to_dict(),
            "providers": sorted(PROVIDER_CLASSES),
            "evaluation": {
                "concurrency": config["EVAL_CONCURRENCY"],
                "provider_concurrency": config["PROVIDER_CONCURRENCY"],
                "timeout_seconds": config["PROVIDER_TIMEOUT_SECONDS"],
            },
            "ingestion": {
                "credentials_configured": bool(config["INGESTION_PUBLIC_KEY"] and config["INGESTION_SECRET_KEY"]),
                "reject_orphans": config["INGESTION_REJECT_ORPHANS"],
            },
        },
    )


# ==================== APPLICATION ====================

def _error_response(request: Request, status_code: int, error: str, message: str,
                    details: Optional[Dict[str, Any]] = None,
                    headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=details or {},
        request_id=getattr(request.state, "request_id", None)
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to the error envelope."""

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError):
        logger.warning("Malformed ingestion payload", error=str(exc))
        return _error_response(request, 400, "INVALID_BATCH", str(exc))

    @app.exception_handler(JobCreationError)
    async def job_creation_error_handler(request: Request, exc: JobCreationError):
        logger.warning("Evaluation job rejected", error=str(exc))
        return _error_response(request, 400, "JOB_REJECTED", str(exc))

    @app.exception_handler(WebhookSignatureError)
    async def webhook_signature_error_handler(request: Request, exc: WebhookSignatureError):
        logger.warning("Webhook signature rejected", error=str(exc))
        return _error_response(request, 401, "INVALID_SIGNATURE", str(exc))

    @app.exception_handler(PresetEvaluatorError)
    async def preset_evaluator_error_handler(request: Request, exc: PresetEvaluatorError):
        return _error_response(request, 403, "PRESET_READ_ONLY", str(exc))

    @app.exception_handler(JobStateError)
    async def job_state_error_handler(request: Request, exc: JobStateError):
        return _error_response(request, 409, "INVALID_JOB_STATE", str(exc))

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store operation failed", error=str(exc))
        return _error_response(request, 409, "STORE_ERROR", str(exc))

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        logger.error("Provider call failed", provider=exc.provider, error=str(exc))
        return _error_response(request, 502, "PROVIDER_ERROR", str(exc),
                               details={"provider": exc.provider, "status_code": exc.status_code})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return _error_response(request, 500, "CONFIGURATION_ERROR", "System configuration error",
                               details={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in exc.errors()
        ]
        return _error_response(request, 400, "VALIDATION_ERROR", "Invalid request", details={"errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, "HTTP_ERROR", str(exc.detail),
                               details={"status_code": exc.status_code}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unexpected error occurred",
                     error=str(exc),
                     error_type=type(exc).__name__,
                     request_id=getattr(request.state, "request_id", None))
        return _error_response(request, 500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred")


async def cleanup_locks_periodically(store: InMemoryStore, interval_seconds: float, max_age: timedelta) -> None:
    """Sweep idle per-trace and per-job locks until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.cleanup_stale_locks(max_age=max_age)
        except Exception as e:
            logger.error("Lock cleanup failed", error=str(e))


def create_app(
    store: Optional[InMemoryStore] = None,
    provider_factory: Optional[ProviderFactory] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Store to serve from (a fresh in-memory store by default)
        provider_factory: Optional override for building provider clients

    Returns:
        FastAPI: Configured application
    """
    config = initialize_app()

    app = FastAPI(
        title="Trace Evaluation Service",
        description="Trace ingestion and LLM-as-judge evaluation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.state.store = store or InMemoryStore()
    app.state.aggregator = IngestionAggregator(app.state.store)
    app.state.executor = EvaluationExecutor(app.state.store, provider_factory=provider_factory)
    app.state.job_service = EvalJobService(app.state.store, app.state.executor)
    app.state.results = ResultsAggregator(app.state.store)

    @app.middleware("http")
    async def logging_and_timing_middleware(request: Request, call_next):
        """Log requests and responses with timing information."""
        start_time = time.time()
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id

        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=request.client.host if request.client else "unknown"
        )

        response = await call_next(request)
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            processing_time_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        """Seed preset evaluators and start the lock cleanup task."""
        if config["SEED_PRESET_EVALUATORS"]:
            count = await app.state.store.seed_presets(preset_evaluators())
            logger.info("Preset evaluators seeded", count=count)
        app.state.lock_cleanup_task = asyncio.create_task(cleanup_locks_periodically(
            app.state.store,
            interval_seconds=config["LOCK_CLEANUP_INTERVAL_SECONDS"],
            max_age=timedelta(seconds=config["LOCK_MAX_AGE_SECONDS"]),
        ))
        logger.info("Trace evaluation service started", version=__version__, routes=len(app.routes))

    @app.on_event("shutdown")
    async def shutdown_event():
        task = getattr(app.state, "lock_cleanup_task", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Trace evaluation service stopped")

    return app


app = create_app()
