"""
Main FastAPI application entry point.

One process runs the dashboard API, the reconciliation worker and the event
watcher. The worker and the watcher live in ``OperatorRuntime`` and are started
and stopped by the application lifespan.
"""
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from arango_operator.api.v1 import deployments, health
from arango_operator.config.logging import configure_logging, get_logger
from arango_operator.config.settings import Settings, settings
from arango_operator.exceptions import OperatorException

configure_logging()
logger = get_logger(__name__)

# Seconds granted to in-flight passes on shutdown
SHUTDOWN_GRACE_SECONDS = 30.0


class OperatorRuntime:
    """Platform client plus the background loops driving reconciliation."""

    def __init__(self, config: Settings):
        self.config = config
        self.platform = None
        self.worker = None
        self.watcher = None
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        from arango_operator.services.kubernetes import KubernetesPlatform
        from arango_operator.services.reconciler import DeploymentReconciler
        from arango_operator.workers.event_watcher import EventWatcher
        from arango_operator.workers.reconciliation_worker import ReconciliationWorker

        self.platform = await KubernetesPlatform.connect(self.config)
        self.worker = ReconciliationWorker(
            DeploymentReconciler(self.platform, settings=self.config),
            namespace=self.config.watch_namespace,
            reconcile_interval=self.config.reconcile_interval,
        )
        self.watcher = EventWatcher(self.platform, self.worker, namespace=self.config.watch_namespace)
        self._tasks = [
            asyncio.create_task(self.worker.start(), name="reconciliation-worker"),
            asyncio.create_task(self.watcher.start(), name="event-watcher"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("operator_task_failed", task=task.get_name(), error=str(error), exc_info=error)
        else:
            logger.info("operator_task_exited", task=task.get_name())

    async def stop(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        if self.worker is not None:
            await self.worker.stop()
        for task in self._tasks:
            task.cancel()
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._tasks, return_exceptions=True),
                timeout=SHUTDOWN_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("operator_shutdown_timeout", grace_seconds=SHUTDOWN_GRACE_SECONDS)
        if self.platform is not None:
            await self.platform.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Start the operator loops with the server and stop them on shutdown."""
    logger.info(
        "operator_starting",
        version=settings.app_version,
        namespace=settings.watch_namespace,
        crd=f"{settings.crd_plural}.{settings.crd_group}/{settings.crd_version}",
    )

    runtime = OperatorRuntime(settings)
    try:
        await runtime.start()
    except Exception as e:
        logger.error("operator_startup_failed", error=str(e), exc_info=True)
        await runtime.stop()
        raise

    app.state.platform = runtime.platform
    app.state.worker = runtime.worker
    logger.info("operator_started")

    yield

    logger.info("operator_shutting_down")
    await runtime.stop()
    logger.info("operator_stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Kubernetes operator for ArangoDB deployments",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    openapi_url=None if settings.is_production else "/openapi.json",
    lifespan=lifespan,
)


@app.exception_handler(OperatorException)
async def operator_exception_handler(request: Request, exc: OperatorException) -> JSONResponse:
    """Render operator errors with their HTTP status."""
    log = logger.warning if exc.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR else logger.error
    log(
        "api_request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "type": type(exc).__name__,
                "message": exc.message,
                "details": exc.details,
                "status_code": exc.status_code,
            }
        },
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.debug(
        "api_request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
    )
    return response


app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(deployments.router, prefix="/api/deployment", tags=["Deployments"])


@app.get("/", include_in_schema=False)
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "namespace": settings.watch_namespace,
    }


def run(config: Optional[Settings] = None):
    """Serve the dashboard; the operator loops start with the application."""
    import uvicorn

    config = config or settings
    try:
        uvicorn.run(
            "arango_operator.main:app",
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("operator_interrupted")
    finally:
        sys.exit(0)


if __name__ == "__main__":
    run()
