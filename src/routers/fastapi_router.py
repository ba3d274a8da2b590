from fastapi import APIRouter

from src.attestation.router import router as attestation_router
from src.utils.logger import logger

router = APIRouter()

# Dashboard clients call the /api-prefixed paths; newer clients use the bare ones
router.include_router(attestation_router, tags=["attestation"])
router.include_router(attestation_router, prefix="/api", tags=["attestation"])
logger.info("Attestation routes mounted at / and /api")
