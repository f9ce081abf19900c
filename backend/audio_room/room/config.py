"""룸 세션 설정."""

import os
import logging
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RoomConfig:
    """역할 전환 및 세션 정책 설정."""

    # owner가 입장 시 바로 speaker로 시작 (룸 즉시 활성화)
    OWNER_AUTO_SPEAK: bool = _env_flag("OWNER_AUTO_SPEAK")

    # presence/역할 변경 후 마이크 평가까지 대기 (초)
    ROLE_DEBOUNCE: float = float(os.getenv("ROLE_DEBOUNCE", "0.15"))

    # 서버가 동시에 호스팅하는 세션 수 상한 (0 = 무제한)
    MAX_HOSTED_SESSIONS: int = int(os.getenv("MAX_HOSTED_SESSIONS", "0"))


room_config = RoomConfig()

logger.info(
    f"[Room Config] owner 자동 speaker: {room_config.OWNER_AUTO_SPEAK}, "
    f"역할 디바운스: {room_config.ROLE_DEBOUNCE}s"
)
