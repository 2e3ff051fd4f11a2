from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bookmail import __version__
from bookmail.api.router import api_router
from bookmail.config import get_settings
from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone, OrchestratorFailure
from bookmail.core.logging import get_logger, setup_logging
from bookmail.core.scheduler import start_scheduler, stop_scheduler
from bookmail.core.timeconv import utc_now

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()


app = FastAPI(
    title="BookMail",
    description="Daily book lessons by email: delivery scheduling API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.base_url, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router)


@app.exception_handler(OrchestratorFailure)
async def orchestrator_failure_handler(request: Request, exc: OrchestratorFailure) -> JSONResponse:
    """A scheduler run that could not proceed. The run record is already marked failed."""
    logger.bind(run_id=exc.run_id, path=request.url.path, error=str(exc)).error("scheduler_run_aborted")
    return JSONResponse(
        status_code=500,
        content={
            "error": str(exc),
            "timestamp": utc_now().isoformat(),
            "run_id": exc.run_id,
        },
    )


@app.exception_handler(InvalidTimezone)
@app.exception_handler(InvalidTimeFormat)
async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
