from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from learnquest.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the email drain and maintenance loops; stop them on shutdown."""
    from learnquest.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start_workers()
    logger.info("background_workers_started")

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


app = FastAPI(title="LearnQuest Accounts", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with X-Request-ID (client-supplied or generated) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report email queue depth, active lockouts and background worker state.

    The status is ``degraded`` once the queue backs up past the configured depth.
    """
    from learnquest.service.runtime import get_runtime

    runtime = get_runtime()
    queue_depth = runtime.email_queue.queue_count()
    degraded = queue_depth > runtime.settings.email_queue_degraded_depth
    return {
        "status": "degraded" if degraded else "healthy",
        "version": __version__,
        "email_queue": {"depth": queue_depth, "degraded": degraded},
        "lockouts": {"active": runtime.tracker.locked_count()},
        "workers": {
            "email_queue": runtime.email_worker.running,
            "maintenance": runtime.maintenance_worker.running,
        },
    }
