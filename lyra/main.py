import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from lyra.api.errors import register_exception_handlers
from lyra.api.v1.router import router as v1_router
from lyra.config import settings
from lyra.database import SessionLocal
from lyra.services.artifacts import LocalArtifactStore
from lyra.services.gateway import GeminiGateway
from lyra.services.prompt_history import PromptHistoryRecorder
from lyra.services.task_store import TaskStore
from lyra.worker.runner import TaskRunner
from lyra.worker.scheduler import Scheduler

logger = logging.getLogger("lyra.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the task store and, when enabled, the scheduler for this process.

    Exactly one process per deployment should run with SCHEDULER_ENABLED=1;
    API-only replicas just enqueue.
    """

    store = TaskStore(SessionLocal, max_attempts=settings.task_max_attempts)
    app.state.task_store = store
    app.state.scheduler = None

    gateway = None
    if settings.scheduler_enabled:
        gateway = GeminiGateway()
        runner = TaskRunner(
            store=store,
            gateway=gateway,
            artifacts=LocalArtifactStore(),
            history=PromptHistoryRecorder(SessionLocal),
            gateway_timeout=settings.gateway_timeout_seconds,
        )
        scheduler = Scheduler(store=store, runner=runner)
        scheduler.start()
        app.state.scheduler = scheduler

    try:
        yield
    finally:
        if app.state.scheduler is not None:
            await app.state.scheduler.stop()
        if gateway is not None:
            await gateway.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Lyra Generation Task API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Attach a request id to every response and log a compact access line.

        - If the caller provides X-Request-ID, we reuse it.
        - Otherwise we generate a UUID4.
        """

        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "access request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    register_exception_handlers(app)

    @app.get("/health")
    async def health(request: Request):
        scheduler = getattr(request.app.state, "scheduler", None)
        running = scheduler is not None and scheduler.is_running
        return {"status": "ok", "task_processor": "running" if running else "stopped"}

    app.include_router(v1_router, prefix="/api/v1")
    app.mount(
        settings.artifact_base_url,
        StaticFiles(directory=settings.artifact_root, check_dir=False),
        name="artifacts",
    )
    return app


app = create_app()
