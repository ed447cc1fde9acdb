"""
Health check endpoints.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database.session import get_session
from app.services.config_service import config_service

router = APIRouter()
logger = logging.getLogger("app.health")

SERVICE_NAME = "deckimport"
SERVICE_VERSION = "0.1.0"


@router.get("/healthz")
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint for Kubernetes/Docker health probes.

    Returns:
        Dict with status information
    """
    logger.info("Health check requested")

    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
    }


@router.get("/health")
def detailed_health(db: Session = Depends(get_session)) -> Dict[str, Any]:
    """
    Detailed health check with component status.

    Returns:
        Dict with detailed health information
    """
    logger.info("Detailed health check requested")

    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "error"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "time": config_service.now().isoformat(),
        "components": {
            "database": database,
        },
    }
