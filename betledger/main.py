"""BetLedger FastAPI application.

Virtual bet tracking with settlement reconciliation and derived P&L.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from betledger import __version__
from betledger.api.routes import budget, content, health, ledger, strategies
from betledger.config import get_settings
from betledger.services.ledger import LedgerAuthError, LedgerError, LedgerSchemaError

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

settings = get_settings()
logging.basicConfig(format="%(message)s", level=settings.log_level.upper())
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("starting_betledger", version=__version__)
    yield
    logger.info("shutting_down_betledger")


# Create FastAPI application
app = FastAPI(
    title="BetLedger",
    description="Virtual bet ledger with settlement reconciliation",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

# Include API routers
app.include_router(health.router)
app.include_router(ledger.router)
app.include_router(budget.router)
app.include_router(content.router)
app.include_router(strategies.router)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Map ledger store failures to HTTP responses."""
    if isinstance(exc, LedgerAuthError):
        status_code = 401
    else:
        # Missing schema and transient failures are both "try again later"
        status_code = 503
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error": exc.error_type.value,
            "schema_missing": isinstance(exc, LedgerSchemaError),
        },
    )
