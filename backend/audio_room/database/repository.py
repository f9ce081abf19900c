"""게시글(룸) 레포지토리 모듈.

오디오 룸은 ``posts`` 레코드 하나에 대응합니다. 이 모듈은 owner 조회와
``audio_room_active`` 플래그 읽기/쓰기만 다루며, 스키마 자체는 관리하지 않습니다.

Classes:
    PostRepository: 룸 owner 조회, 활성 플래그 조건부 갱신, 활성 룸 목록
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .connection import get_db_manager
from .redis_connection import get_redis_manager
from ..realtime.config import channel_config

logger = logging.getLogger(__name__)


class PostRepository:
    """``posts`` 테이블 접근.

    Note:
        - 쓰기 실패는 로그로 남기고 False를 반환 (예외를 던지지 않음)
        - 플래그 쓰기 성공 시 ``audio-room-status`` 채널로 상태 알림을 publish
    """

    def __init__(self, db=None, redis_manager=None):
        self.db = db or get_db_manager()
        self.redis = redis_manager or get_redis_manager()

    async def get_post_owner(self, post_id: str) -> Optional[str]:
        """게시글 작성자(룸 owner) ID를 조회합니다.

        Returns:
            Optional[str]: owner 프로필 ID. 게시글이 없거나 DB 오류면 None
        """
        if not self.db.is_initialized:
            logger.warning("[DB] 초기화 안됨, owner 조회 스킵")
            return None

        try:
            owner_id = await self.db.fetchval(
                """
                SELECT user_id::text
                FROM posts
                WHERE id::text = $1
                """,
                post_id
            )
        except Exception as e:
            logger.error(f"[DB] owner 조회 실패 (post={post_id}): {e}")
            return None

        if owner_id is None:
            logger.info(f"[DB] 게시글 없음: {post_id}")
        return owner_id

    async def is_audio_room_active(self, post_id: str) -> bool:
        if not self.db.is_initialized:
            return False

        try:
            active = await self.db.fetchval(
                "SELECT audio_room_active FROM posts WHERE id::text = $1",
                post_id
            )
            return bool(active)
        except Exception as e:
            logger.error(f"[DB] 룸 활성 상태 조회 실패 (post={post_id}): {e}")
            return False

    async def set_audio_room_active(self, post_id: str, owner_id: str, active: bool) -> bool:
        """룸 활성 플래그를 조건부로 갱신합니다.

        ``(post id, owner id)`` 가 모두 일치하는 레코드만 갱신되므로,
        owner가 아닌 참가자가 호출해도 아무 행도 바뀌지 않습니다.

        Args:
            post_id (str): 게시글 ID
            owner_id (str): 호출자가 알고 있는 owner ID
            active (bool): 새 플래그 값

        Returns:
            bool: 한 행 이상 갱신되었으면 True
        """
        if not self.db.is_initialized:
            logger.warning(f"[DB] 초기화 안됨, 룸 플래그 갱신 스킵 (active={active})")
            return False

        try:
            status = await self.db.execute(
                """
                UPDATE posts
                SET audio_room_active = $1
                WHERE id::text = $2 AND user_id::text = $3
                """,
                active, post_id, owner_id
            )
        except Exception as e:
            logger.error(f"[DB] 룸 플래그 갱신 실패 (post={post_id}, active={active}): {e}")
            return False

        updated = _affected_rows(status) > 0
        if not updated:
            logger.warning(f"[DB] 룸 플래그 갱신 대상 없음 (post={post_id}, owner={owner_id[:8]})")
            return False

        logger.info(f"[DB] 룸 {'활성화' if active else '비활성화'}: {post_id}")
        await self._publish_status(post_id, owner_id, active)
        return True

    async def list_active_rooms(self, community_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """활성화된 오디오 룸 목록을 최신 게시글 순으로 조회합니다."""
        if not self.db.is_initialized:
            return []

        query = """
            SELECT id::text AS post_id, user_id::text AS owner_id,
                   community_id::text AS community_id, title, created_at
            FROM posts
            WHERE audio_room_active = true
        """
        args = []
        if community_id:
            query += " AND community_id::text = $1"
            args.append(community_id)
        query += " ORDER BY created_at DESC"

        try:
            rows = await self.db.fetch(query, *args)
        except Exception as e:
            logger.error(f"[DB] 활성 룸 목록 조회 실패: {e}")
            return []

        rooms = []
        for row in rows:
            room = dict(row)
            if isinstance(room.get("created_at"), datetime):
                room["created_at"] = room["created_at"].isoformat()
            rooms.append(room)
        return rooms

    async def _publish_status(self, post_id: str, owner_id: str, active: bool) -> None:
        if not self.redis.is_initialized:
            return
        notice = {
            "type": "room_status",
            "post_id": post_id,
            "owner_id": owner_id,
            "audio_room_active": active,
            "changed_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.redis.publish(channel_config.STATUS_CHANNEL, json.dumps(notice))
        except Exception as e:
            logger.warning(f"[Redis] 룸 상태 알림 실패 (post={post_id}): {e}")


def _affected_rows(status: Optional[str]) -> int:
    """asyncpg 명령 상태 문자열(예: ``"UPDATE 1"``)에서 행 수를 읽습니다."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0
