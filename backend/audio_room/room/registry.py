"""호스팅 세션 레지스트리.

서버가 대신 참가하는 세션(봇, 녹음기, 테스트 하네스 등)을
``(post_id, participant_id)`` 단위로 보관합니다.

Architecture:
    - rooms: Dict[str, Dict[str, AudioRoomSession]] - 룸 ID → 참가자 ID → 세션
    - 룸의 마지막 세션이 나가면 룸 항목도 삭제

Examples:
    >>> registry = SessionRegistry()
    >>> session = await registry.join("post-1", "bot-1")
    >>> registry.get_room_list()
    [{'post_id': 'post-1', 'session_count': 1, 'participants': ['bot-1']}]
    >>> report = await registry.leave("post-1", "bot-1")
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .config import room_config
from .session import AudioRoomSession
from ..database import PostRepository, get_redis_manager
from ..realtime import RealtimeChannel
from ..shared import CleanupReport

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, str], AudioRoomSession]


class SessionLimitError(Exception):
    """호스팅 세션 수 상한 초과."""


def default_session_factory(post_id: str, participant_id: str) -> AudioRoomSession:
    """Redis 채널과 PostgreSQL 레포지토리를 쓰는 세션을 만듭니다.

    Raises:
        RuntimeError: Redis가 초기화되지 않은 경우
    """
    redis_manager = get_redis_manager()
    if not redis_manager.is_initialized:
        raise RuntimeError("Redis not initialized. Call initialize() first.")
    channel = RealtimeChannel(redis_manager.client, post_id, key=participant_id)
    return AudioRoomSession(
        post_id,
        participant_id,
        channel=channel,
        repository=PostRepository(),
    )


class SessionRegistry:
    """호스팅 세션 보관소.

    Attributes:
        rooms (Dict[str, Dict[str, AudioRoomSession]]): 룸 ID → 참가자 ID → 세션
        max_sessions (int): 동시 세션 상한 (0 = 무제한)
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        max_sessions: Optional[int] = None,
    ):
        self.session_factory = session_factory or default_session_factory
        self.max_sessions = (
            room_config.MAX_HOSTED_SESSIONS if max_sessions is None else max_sessions
        )

        # post_id -> {participant_id: AudioRoomSession}
        self.rooms: Dict[str, Dict[str, AudioRoomSession]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return sum(len(sessions) for sessions in self.rooms.values())

    def get(self, post_id: str, participant_id: str) -> Optional[AudioRoomSession]:
        return self.rooms.get(post_id, {}).get(participant_id)

    def get_room_sessions(self, post_id: str) -> List[AudioRoomSession]:
        return list(self.rooms.get(post_id, {}).values())

    async def join(self, post_id: str, participant_id: str) -> AudioRoomSession:
        """세션을 만들어 룸에 입장시킵니다. 이미 있으면 기존 세션을 반환합니다.

        Raises:
            SessionLimitError: 동시 세션 상한 초과
        """
        async with self._lock:
            existing = self.get(post_id, participant_id)
            if existing is not None:
                return existing
            if self.max_sessions and len(self) >= self.max_sessions:
                raise SessionLimitError(f"호스팅 세션 상한 도달 ({self.max_sessions})")

            session = self.session_factory(post_id, participant_id)
            self.rooms.setdefault(post_id, {})[participant_id] = session

        try:
            await session.join()
        except Exception:
            self._discard(post_id, participant_id)
            await session.leave()
            raise

        logger.info(
            f"[Room] 세션 등록: {participant_id[:8]} → '{post_id}' "
            f"(룸 세션 {len(self.rooms.get(post_id, {}))}개)"
        )
        return session

    async def leave(self, post_id: str, participant_id: str) -> Optional[CleanupReport]:
        """세션을 종료하고 제거합니다.

        Returns:
            Optional[CleanupReport]: 정리 결과. 세션이 없으면 None
        """
        session = self._discard(post_id, participant_id)
        if session is None:
            return None
        return await session.leave()

    def get_room_list(self) -> List[dict]:
        return [
            {
                "post_id": post_id,
                "session_count": len(sessions),
                "participants": list(sessions.keys()),
            }
            for post_id, sessions in self.rooms.items()
        ]

    async def shutdown(self) -> Dict[str, CleanupReport]:
        """모든 세션을 종료합니다.

        Returns:
            Dict[str, CleanupReport]: ``"{post_id}/{participant_id}"`` → 정리 결과
        """
        reports = {}
        for post_id in list(self.rooms.keys()):
            for participant_id in list(self.rooms.get(post_id, {}).keys()):
                report = await self.leave(post_id, participant_id)
                if report is not None:
                    reports[f"{post_id}/{participant_id}"] = report
        logger.info(f"[Room] 전체 세션 종료: {len(reports)}개")
        return reports

    def _discard(self, post_id: str, participant_id: str) -> Optional[AudioRoomSession]:
        sessions = self.rooms.get(post_id)
        if not sessions:
            return None
        session = sessions.pop(participant_id, None)
        if not sessions:
            del self.rooms[post_id]
            logger.info(f"[Room] 룸 '{post_id}' 항목 삭제 (호스팅 세션 없음)")
        return session
