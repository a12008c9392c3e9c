"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from liquidity_engine.core.domain import utcnow
from liquidity_engine.core.pool_registry import PoolRegistry, get_pool_registry
from liquidity_engine.models.base import get_db
from config.settings import get_settings
import redis

router = APIRouter()

@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint.
    Verifies database connectivity.
    """
    try:
        # Test database connection
        db.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "database": "connected"
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "timestamp": utcnow().isoformat(),
            "database": "disconnected",
            "error": str(e)
        }

@router.get("/health/pools")
def pools_health(registry: PoolRegistry = Depends(get_pool_registry)):
    """
    Per-pool state and the number of defects waiting for an operator.
    """
    pools = {}
    for engine in registry.engines():
        summary = engine.summary()
        pools[engine.pool_id] = {
            "state": summary['state'],
            "version": summary['version'],
            "operator_items": len(registry.operator_queue.pending(engine.pool_id)),
        }
    return {
        "status": "healthy" if not len(registry.operator_queue) else "attention",
        "timestamp": utcnow().isoformat(),
        "pools": pools
    }

@router.get("/celery/status")
def celery_status():
    """
    Celery worker status endpoint.
    Checks Redis connectivity and worker count.
    """
    settings = get_settings()
    try:
        r = redis.Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, decode_responses=True)
        workers = r.smembers('celery')
        worker_count = len(workers) if workers else 0

        return {
            "status": "healthy" if worker_count > 0 else "idle",
            "workers": worker_count,
            "timestamp": utcnow().isoformat()
        }
    except redis.RedisError as e:
        return {
            "status": "unhealthy",
            "workers": 0,
            "timestamp": utcnow().isoformat(),
            "error": str(e)
        }
