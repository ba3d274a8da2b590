from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from src.config.common_settings import ALLOWED_ORIGINS, CHAIN_ID, GATE_ADDR, ATTESTATION_OUTPUT_DIR, PORT
from src.attestation.router import request_validation_handler
from src.routers.fastapi_router import router as api_router
from src.utils.startup_validation import validate_startup
from src.utils.logger import logger
from src.utils.time_utils import now_sec

# Run startup validation
logger.info("DScope attestation service starting up...")
if not validate_startup("attester"):
    # Ingest and read endpoints stay up; signing answers "signer not ready"
    logger.error("Startup validation failed. Eligibility signing is disabled until configuration is fixed.")

app = FastAPI(title="DScope Attestation Service", version="0.1.0")

# Credentials cannot be combined with a wildcard origin
allow_all = ALLOWED_ORIGINS == ["*"]
logger.info(f"Allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=not allow_all,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
logger.info("✅ CORS middleware configured")

# Body validation failures use the service-wide {"error": ...} shape
app.add_exception_handler(RequestValidationError, request_validation_handler)


@app.get("/healthz")
def healthz() -> dict:
    """Liveness check."""
    return {"ok": True, "ts": now_sec()}


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    from src.attestation.router import get_aggregator, get_signer

    get_aggregator()
    signer = get_signer()
    logger.info("Attestation service up on port %s", PORT)
    logger.info("CHAIN_ID=%s GATE=%s signer=%s", CHAIN_ID, GATE_ADDR or "(unset)",
                "ready" if signer.ready else "not ready")
    logger.info("OUTPUT_DIR=%s", ATTESTATION_OUTPUT_DIR)


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on application shutdown."""
    logger.info("Shutting down attestation service...")


# Mount API routes
app.include_router(api_router)
