"""Health checks and Prometheus metrics"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.metrics import update_subscriptions_gauge
from app.db.redis import get_redis_client
from app.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics; the subscription gauge is recounted on every scrape"""
    update_subscriptions_gauge(db)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check():
    return {"status": "healthy"}


@router.get("/health/ready")
def readiness_check(db: Session = Depends(get_db)):
    """Webhooks cannot be reconciled without both the database and Redis (locks)"""
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error(f"Readiness: database check failed: {e}")
        checks["database"] = "unavailable"
    try:
        get_redis_client().ping()
        checks["redis"] = "ok"
    except Exception as e:
        logger.error(f"Readiness: redis check failed: {e}")
        checks["redis"] = "unavailable"

    ready = all(value == "ok" for value in checks.values())
    return JSONResponse(status_code=200 if ready else 503, content={"ready": ready, "checks": checks})
