import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stockkeeper.api import carts, orders, payments, products
from stockkeeper.config import settings
from stockkeeper.database import SessionLocal, init_db
from stockkeeper.exceptions import ContentionError, PaymentProviderError
from stockkeeper.services import audit_service

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if settings.AUDIT_ENABLED and not audit_service.dispatcher.sinks:
        audit_service.dispatcher.add_sink(audit_service.DatabaseAuditSink(SessionLocal))
    yield
    audit_service.dispatcher.drain()


app = FastAPI(
    title="Stockkeeper API",
    description="Stock reservations, order lifecycle and inventory ledger",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ContentionError)
async def contention_handler(request: Request, exc: ContentionError):
    return JSONResponse(
        status_code=503,
        content={"detail": {"code": exc.code.value, "message": exc.message}},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(PaymentProviderError)
async def payment_provider_handler(request: Request, exc: PaymentProviderError):
    return JSONResponse(status_code=502, content={"detail": {"code": "payment_provider", "message": exc.message}})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return JSON for unhandled exceptions so clients can parse the error."""
    logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.include_router(products.router, prefix="/api/v1")
app.include_router(orders.router, prefix="/api/v1")
app.include_router(carts.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")


@app.get("/health")
def health():
    return {"status": "ok"}
