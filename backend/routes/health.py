"""Health Check API 라우터.

PostgreSQL(posts)과 Redis(실시간 채널) 연결 상태를 확인합니다.
"""

from fastapi import APIRouter

from audio_room.database import get_db_manager, get_redis_manager

router = APIRouter(prefix="/api/health", tags=["health"])


async def _db_status() -> str:
    db = get_db_manager()
    if not db.is_initialized:
        return "not_initialized"
    try:
        await db.fetchval("SELECT 1")
        return "ok"
    except Exception:
        return "error"


async def _redis_status() -> str:
    redis_mgr = get_redis_manager()
    if not redis_mgr.is_initialized:
        return "not_initialized"
    return "ok" if await redis_mgr.ping() else "error"


@router.get("")
async def health_check():
    """전체 서비스 상태를 확인합니다.

    Returns:
        dict: 모든 서비스 연결 상태 정보
    """
    db_status = await _db_status()
    redis_status = await _redis_status()
    overall = "ok" if db_status == "ok" and redis_status == "ok" else "degraded"

    return {
        "status": overall,
        "services": {
            "database": db_status,
            "redis": redis_status,
        }
    }


@router.get("/db")
async def db_health_check():
    status = await _db_status()
    if status == "not_initialized":
        return {"status": "error", "message": "Database not initialized"}
    return {"status": status, "connected": status == "ok"}


@router.get("/redis")
async def redis_health_check():
    status = await _redis_status()
    if status == "not_initialized":
        return {"status": "error", "message": "Redis not initialized"}
    return {"status": status, "connected": status == "ok"}
