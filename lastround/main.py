"""Last Round FastAPI application.

End-of-season "Last Round Special" cup: activation, cup points, corrections
and winner determination.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lastround.api.routes import admin, cup, health
from lastround.config import get_settings
from lastround.logging_config import configure_logging
from lastround.services.cup.errors import CupError, CupValidationError, NotFoundError

settings = get_settings()
configure_logging(settings.log_level)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("starting_lastround", version="0.1.0")
    yield
    logger.info("shutting_down_lastround")


app = FastAPI(
    title="Last Round",
    description="End-of-season cup competition for the prediction game",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(cup.router)
app.include_router(admin.router)


@app.exception_handler(CupError)
async def cup_error_handler(request: Request, exc: CupError):
    """Map unhandled cup errors to HTTP statuses."""
    if isinstance(exc, CupValidationError):
        status_code = 422
    elif isinstance(exc, NotFoundError):
        status_code = 404
    else:
        status_code = 503
    logger.error("cup_error", path=request.url.path, error=str(exc), status_code=status_code)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})
