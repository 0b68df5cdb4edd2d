"""Monitoring API routes for health checks and metrics"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from casefund.db import redis as redis_store
from casefund.db.session import get_db

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint; 503 when the ledger database or Redis is unreachable"""
    checks = {"database": "ok", "redis": "ok"}

    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unavailable: {e}")
        checks["database"] = "unavailable"

    try:
        redis_store.get_redis_client().ping()
    except RedisError as e:
        logger.error(f"Health check: redis unavailable: {e}")
        checks["redis"] = "unavailable"

    if any(v != "ok" for v in checks.values()):
        return JSONResponse(status_code=503, content={"status": "degraded", **checks})
    return {"status": "healthy", **checks}
