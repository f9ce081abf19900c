"""Redis 연결 관리 모듈.

하나의 ``redis.asyncio`` 클라이언트를 룸 실시간 채널(토픽 pub/sub, presence 해시)과
``audio-room-status`` 상태 알림이 함께 사용합니다.

Environment:
    REDIS_URL: 접속 URL
    REDIS_HEALTH_CHECK_INTERVAL: 유휴 pub/sub 연결 점검 주기 초 (기본 30)

Examples:
    >>> redis_mgr = get_redis_manager()
    >>> await redis_mgr.initialize()
    >>> channel = RealtimeChannel(redis_mgr.client, post_id, key=participant_id)
    >>> await redis_mgr.publish("audio-room-status", json.dumps(notice))
    >>> await redis_mgr.close()
"""

import os
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisManager:
    """Redis 클라이언트 싱글톤.

    Attributes:
        client: ``redis.asyncio.Redis`` (decode_responses=True). 초기화 전에는 None
    """

    _instance: Optional["RedisManager"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.client = None
            cls._instance._initialized = False
        return cls._instance

    @property
    def redis_url(self) -> str:
        return os.getenv("REDIS_URL", "redis://localhost:6379")

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self.client is not None

    async def initialize(self) -> bool:
        """클라이언트를 만들고 ping으로 연결을 확인합니다.

        Returns:
            bool: 연결 성공 여부. 실패하면 룸 세션 호스팅이 비활성화됨
        """
        if self._initialized:
            return True

        client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            health_check_interval=int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30")),
        )
        try:
            await client.ping()
        except Exception as e:
            logger.error(f"[Redis] 연결 실패 ({self.redis_url}): {e}")
            await client.aclose()
            return False

        self.client = client
        self._initialized = True
        logger.info(f"[Redis] 연결 완료: {self.redis_url}")
        return True

    async def close(self):
        client, self.client = self.client, None
        self._initialized = False
        if client is not None:
            await client.aclose()
            logger.info("[Redis] 연결 종료")

    async def ping(self) -> bool:
        if not self.is_initialized:
            return False
        try:
            return await self.client.ping()
        except Exception:
            return False

    async def publish(self, channel: str, message: str) -> int:
        """메시지를 publish하고 받은 구독자 수를 반환합니다.

        Raises:
            RuntimeError: 초기화 전 호출
        """
        if not self.is_initialized:
            raise RuntimeError("Redis not initialized. Call initialize() first.")
        return await self.client.publish(channel, message)


def get_redis_manager() -> RedisManager:
    return RedisManager()
