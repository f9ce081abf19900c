"""실시간 채널 설정.

Redis pub/sub 토픽 이름과 presence heartbeat/만료 시간을 환경변수에서 읽습니다.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


@dataclass(frozen=True)
class ChannelConfig:
    """Redis 실시간 채널 설정."""

    # 룸 토픽 접두사 ("{prefix}-{post_id}")
    TOPIC_PREFIX: str = os.getenv("AUDIO_ROOM_TOPIC_PREFIX", "audio-room")

    # 룸 활성 상태 변경 알림 채널
    STATUS_CHANNEL: str = os.getenv("AUDIO_ROOM_STATUS_CHANNEL", "audio-room-status")

    # presence 재등록 주기 (초)
    PRESENCE_HEARTBEAT: float = float(os.getenv("PRESENCE_HEARTBEAT", "10"))

    # 마지막 heartbeat 이후 이 시간이 지나면 참가자에서 제외 (초)
    PRESENCE_TTL: float = float(os.getenv("PRESENCE_TTL", "30"))


channel_config = ChannelConfig()

logger.info(
    f"[Realtime Config] heartbeat: {channel_config.PRESENCE_HEARTBEAT}s, "
    f"TTL: {channel_config.PRESENCE_TTL}s"
)
