"""
Lacquer — Capture & Ingestion API Server
FastAPI app exposing the capture-to-inventory pipeline and the ingestion job
admin surface. Business rules live in orchestrator/ and triggers/; handlers
only authenticate, unpack the body and map errors onto status codes.

Run: uvicorn outputs.dashboard:app --port 8080
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import LacquerConfig, config
from models.db import StoreUnavailable
from models.ingestion_store import job_to_api
from orchestrator.errors import ConflictError, InputError, NotActionableError, NotFoundError
from outputs.auth import AuthenticatedUser, build_dependencies
from triggers.embedded_scheduler import get_scheduler_status, start_scheduler, stop_scheduler

logger = logging.getLogger("lacquer.dashboard")

# ============================================================
# Logging: module-level so uvicorn outputs.dashboard:app picks it up
# ============================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)

JOB_LIST_DEFAULT_LIMIT = 20
JOB_LIST_MAX_LIMIT = 100


# ============================================================
# Service wiring
# ============================================================

@dataclass
class Services:
    resolver: Any
    answers: Any
    job_store: Any
    queue: Any
    dispatcher: Any
    worker: Any = None


def build_services(cfg: LacquerConfig) -> Services:
    """Wire the production object graph (PostgreSQL stores, httpx connectors, Claude)."""
    from models.capture_store import CaptureSessionStore
    from models.catalog import Catalog
    from models.ingestion_store import IngestionJobStore
    from orchestrator.answer_loop import QuestionAnswerLoop
    from orchestrator.resolver import CaptureResolver
    from tools.hex_detection import HexDetector
    from triggers.connectors import connector_factory
    from triggers.dispatcher import JobDispatcher
    from triggers.ingestion_worker import IngestionJobWorker
    from triggers.job_queue import JobQueue

    catalog = Catalog()
    hex_detector = HexDetector(cfg.ai) if cfg.ai.api_key else None
    resolver = CaptureResolver(CaptureSessionStore(), catalog, cfg.capture, hex_detector=hex_detector)
    job_store = IngestionJobStore()
    queue = JobQueue.from_config(cfg.ingestion)
    return Services(
        resolver=resolver,
        answers=QuestionAnswerLoop(resolver),
        job_store=job_store,
        queue=queue,
        dispatcher=JobDispatcher(job_store, queue, cfg.ingestion),
        worker=IngestionJobWorker(
            job_store, catalog, connector_factory(cfg.ingestion.base_urls),
            hex_detector=hex_detector, ingestion_config=cfg.ingestion,
        ),
    )


# ============================================================
# Request models
# ============================================================

class StartCaptureRequest(BaseModel):
    metadata: Optional[Any] = None


class FrameRequest(BaseModel):
    frameType: Optional[str] = None
    imageId: Optional[Any] = None
    imageBlobUrl: Optional[Any] = None
    quality: Optional[Any] = None


class AnswerRequest(BaseModel):
    questionId: Optional[Any] = None
    answer: Optional[Any] = None


class RunJobRequest(BaseModel):
    source: Optional[Any] = None
    searchTerm: Optional[Any] = None
    page: Optional[Any] = None
    pageSize: Optional[Any] = None
    maxRecords: Optional[Any] = None
    recentDays: Optional[Any] = None
    materializeToInventory: Optional[Any] = None
    detectHexFromImage: Optional[Any] = None
    overwriteDetectedHex: Optional[Any] = None


class CancelJobRequest(BaseModel):
    reason: Optional[str] = None


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _positive_job_id(job_id: str) -> int:
    value = job_id.strip()
    if not value.isdigit() or int(value) <= 0:
        raise InputError("job id must be a positive integer")
    return int(value)


# ============================================================
# App factory
# ============================================================

def create_app(cfg: Optional[LacquerConfig] = None, services: Optional[Services] = None,
               manage_background: Optional[bool] = None) -> FastAPI:
    """Build the app. Tests pass their own services; production wires them lazily."""
    cfg = cfg or config
    if manage_background is None:
        manage_background = services is None
    state = {"services": services}

    def get_services() -> Services:
        if state["services"] is None:
            state["services"] = build_services(cfg)
        return state["services"]

    current_user, admin_user = build_dependencies(cfg.auth)

    app = FastAPI(
        title="Lacquer Capture API",
        description="Capture-to-inventory resolution and catalog ingestion jobs",
        version="1.0.0",
    )

    # --- Error mapping ---

    @app.exception_handler(InputError)
    async def _input_error(request: Request, exc: InputError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(NotActionableError)
    async def _not_actionable(request: Request, exc: NotActionableError):
        return _error(422, str(exc))

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(f"{request.method} {request.url.path}: store unavailable: {exc}")
        return _error(503, "Database unavailable")

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "Request body must be a JSON object")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail},
                            headers=getattr(exc, "headers", None))

    # --- Lifecycle ---

    @app.on_event("startup")
    async def startup():
        logger.info("Lacquer API starting...")
        if not manage_background:
            return
        try:
            from models.db import ensure_tables
            ensure_tables()
        except Exception as e:
            logger.warning(f"Schema bootstrap failed on startup (will retry on first use): {e}")
        if cfg.worker.embedded_scheduler_enabled:
            try:
                svc = get_services()
                start_scheduler(svc.worker, svc.queue, cfg.ingestion)
            except Exception as e:
                logger.error(f"Scheduler failed to start: {e}")

    @app.on_event("shutdown")
    async def shutdown():
        if not manage_background:
            return
        try:
            stop_scheduler()
        except Exception as e:
            logger.warning(f"Scheduler shutdown error: {e}")

    # ============================================================
    # Capture
    # ============================================================

    @app.post("/capture/start", status_code=201, tags=["capture"])
    def capture_start(body: Optional[StartCaptureRequest] = None,
                      user: AuthenticatedUser = Depends(current_user)):
        return get_services().resolver.start(user.user_id, body.metadata if body else None)

    @app.post("/capture/{capture_id}/frame", status_code=201, tags=["capture"])
    def capture_frame(capture_id: str, body: FrameRequest,
                      user: AuthenticatedUser = Depends(current_user)):
        return get_services().resolver.add_frame(
            capture_id, user.user_id, body.frameType,
            image_id=body.imageId, image_blob_url=body.imageBlobUrl, quality=body.quality,
        )

    @app.post("/capture/{capture_id}/finalize", tags=["capture"])
    def capture_finalize(capture_id: str, user: AuthenticatedUser = Depends(current_user)):
        return get_services().resolver.finalize(capture_id, user.user_id)

    @app.get("/capture/{capture_id}/status", tags=["capture"])
    def capture_status(capture_id: str, user: AuthenticatedUser = Depends(current_user)):
        return get_services().resolver.get_status(capture_id, user.user_id)

    @app.post("/capture/{capture_id}/answer", tags=["capture"])
    def capture_answer(capture_id: str, body: AnswerRequest,
                       user: AuthenticatedUser = Depends(current_user)):
        if "answer" not in body.model_fields_set:
            raise InputError("answer is required")
        return get_services().answers.answer(capture_id, user.user_id, body.answer, body.questionId)

    @app.post("/capture/{capture_id}/frames/{frame_id}/detect-hex", tags=["capture"])
    def capture_detect_hex(capture_id: str, frame_id: str,
                           user: AuthenticatedUser = Depends(current_user)):
        return get_services().resolver.detect_frame_hex(capture_id, user.user_id, frame_id)

    # ============================================================
    # Ingestion (admin)
    # ============================================================

    @app.post("/ingestion/jobs", status_code=202, tags=["ingestion"])
    def ingestion_run(body: RunJobRequest, user: AuthenticatedUser = Depends(admin_user)):
        payload = {k: v for k, v in body.model_dump().items() if k in body.model_fields_set}
        return get_services().dispatcher.dispatch(payload, user.user_id)

    @app.get("/ingestion/jobs", tags=["ingestion"])
    def ingestion_list(limit: Optional[str] = Query(None), source: Optional[str] = Query(None),
                       user: AuthenticatedUser = Depends(admin_user)):
        from triggers.dispatcher import clamp_int

        bounded = clamp_int(limit, JOB_LIST_DEFAULT_LIMIT, 1, JOB_LIST_MAX_LIMIT)
        result = get_services().job_store.list_jobs(bounded, source.strip() if source and source.strip() else None)
        return {"jobs": [job_to_api(r) for r in result["jobs"]], "total": result["total"]}

    @app.get("/ingestion/jobs/{job_id}", tags=["ingestion"])
    def ingestion_get(job_id: str, user: AuthenticatedUser = Depends(admin_user)):
        job = get_services().job_store.get_job(_positive_job_id(job_id))
        if job is None:
            raise NotFoundError("Ingestion job not found")
        return job_to_api(job)

    @app.post("/ingestion/jobs/{job_id}/cancel", tags=["ingestion"])
    def ingestion_cancel(job_id: str, body: Optional[CancelJobRequest] = None,
                         user: AuthenticatedUser = Depends(admin_user)):
        return get_services().dispatcher.cancel(_positive_job_id(job_id), body.reason if body else None)

    @app.post("/ingestion/queue/purge", tags=["ingestion"])
    def ingestion_purge(user: AuthenticatedUser = Depends(admin_user)):
        purged = get_services().queue.purge()
        logger.warning(f"Queue purged by user {user.user_id}: {purged} message(s)")
        return {"purged": purged}

    @app.get("/ingestion/queue/stats", tags=["ingestion"])
    def ingestion_queue_stats(user: AuthenticatedUser = Depends(admin_user)):
        return get_services().queue.stats()

    @app.get("/worker/status", tags=["health"])
    def worker_status(user: AuthenticatedUser = Depends(admin_user)):
        return get_scheduler_status()

    return app


app = create_app(config)
