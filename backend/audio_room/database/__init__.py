"""데이터베이스 모듈.

PostgreSQL(asyncpg)과 Redis(redis.asyncio) 연결 및 게시글 레포지토리를 제공합니다.

주요 기능:
    - PostgreSQL Connection Pool 관리
    - Redis 연결 관리
    - 룸 owner 조회, audio_room_active 플래그 조건부 갱신
"""

from .connection import DatabaseManager, get_db_manager
from .redis_connection import RedisManager, get_redis_manager
from .repository import PostRepository

__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "RedisManager",
    "get_redis_manager",
    "PostRepository",
]
