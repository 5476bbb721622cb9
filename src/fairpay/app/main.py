"""FastAPI application entry point for the FairPay negotiation API."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fairpay.app.config import get_settings
from fairpay.domain.enums import ErrorKind
from fairpay.domain.errors import FairPayError
from fairpay.services.container import build_services

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_INITIALIZED: 503,
    ErrorKind.INVALID_HANDLES: 409,
    ErrorKind.NOT_MARKED_FOR_DECRYPTION: 409,
    ErrorKind.LEDGER_REJECTED: 409,
    ErrorKind.DECRYPTION_TRANSIENT: 503,
    ErrorKind.DECRYPTION_TIMEOUT: 504,
    ErrorKind.MALFORMED_DECRYPTION_RESULT: 502,
    ErrorKind.NETWORK_ERROR: 502,
}


async def bootstrap_fhe(services) -> None:
    """Bring the FHE primitive up; a failure is logged and retried on first use."""
    try:
        await services.fhe.initialize()
    except FairPayError as e:
        logger.warning("FHE bootstrap failed (will retry on demand): %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build services, start the monitor, bootstrap FHE."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(get_settings())
        app.state.services = services

    services.monitor.start()
    # Don't crash startup if the relayer/gateway is unreachable
    await bootstrap_fhe(services)
    yield
    await services.monitor.stop()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="FairPay Negotiation API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FairPayError)
async def fairpay_error_handler(request: Request, exc: FairPayError):
    """Map classified orchestrator errors to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"kind": exc.kind.value, "detail": str(exc), "message": exc.user_message},
    )


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from fairpay.app.routes.negotiations import router as negotiations_router
from fairpay.app.routes.ws import router as ws_router

app.include_router(negotiations_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Return service health status."""
    services = getattr(request.app.state, "services", None)
    return {
        "status": "ok",
        "service": "fairpay",
        "backend": services.settings.backend if services else None,
        "fhe_ready": services.fhe.is_ready() if services else False,
    }


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "fairpay.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
