# villa_ledger/main.py

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from villa_ledger.config import ALLOWED_ORIGINS
from villa_ledger.errors import LedgerError
from villa_ledger.logging_config import setup_logging
from villa_ledger.middleware import RequestIDMiddleware
from villa_ledger.routes.health import router as health_router
from villa_ledger.routes.metrics import router as metrics_router
from villa_ledger.routes.payments import router as payments_router
from villa_ledger.routes.quotes import router as quotes_router
from villa_ledger.routes.tasks import router as tasks_router
from villa_ledger.routes.webhook import router as webhook_router

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Villa Ledger API",
    description="Availability, payment authentication and PMS reconciliation for villa bookings",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if "*" not in ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)

# Register routers
app.include_router(health_router, tags=["Health"])
app.include_router(metrics_router, tags=["Metrics"])
app.include_router(quotes_router, tags=["Quotes"])
app.include_router(payments_router, tags=["Payments"])
app.include_router(webhook_router, prefix="/pms", tags=["Webhooks"])
app.include_router(tasks_router, prefix="/tasks", tags=["Tasks"])


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render domain errors as {"error": {"code", "message"}} with the category status."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log("request_failed", path=request.url.path, code=exc.code, status=exc.http_status)
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {"loc": (), "msg": "Invalid request"}
    location = ".".join(str(part) for part in first["loc"] if part != "body")
    message = f"{location}: {first['msg']}" if location else first["msg"]
    logger.info("request_rejected", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "validation_error", "message": message}},
    )


@app.on_event("startup")
def startup_event() -> None:
    """Re-drive work a previous process left behind."""
    from villa_ledger.db.engine import engine
    from villa_ledger.services.availability import AvailabilityLedger
    from villa_ledger.services.notifications import build_notifier
    from villa_ledger.services.rate_cache import RateCache
    from villa_ledger.services.reconciler import WebhookReconciler

    logger.info("FastAPI application starting up...")

    try:
        ledger = AvailabilityLedger(engine, RateCache(engine))
        ledger.expire_stale_locks()
        WebhookReconciler(engine, ledger, build_notifier()).recover_pending()
    except Exception:
        logger.exception("startup_recovery_failed")

    logger.info("FastAPI application initialized")
