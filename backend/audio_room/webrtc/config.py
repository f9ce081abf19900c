"""WebRTC 모듈 설정.

TURN/STUN 서버, 피어 재구성, 마이크 장치 등 WebRTC 관련 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def as_dicts(self) -> List[dict]:
        """브라우저 클라이언트용 iceServers 배열."""
        servers = []
        if self.STUN_SERVER_URL:
            servers.append({"urls": self.STUN_SERVER_URL})
        for stun_url in self.DEFAULT_STUN_SERVERS:
            servers.append({"urls": stun_url})
        if self.has_turn_server:
            servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return servers

    def rtc_configuration(self) -> RTCConfiguration:
        """aiortc RTCPeerConnection 설정을 생성합니다."""
        ice_servers = [RTCIceServer(urls=[url]) for url in self.DEFAULT_STUN_SERVERS]
        if self.STUN_SERVER_URL:
            ice_servers.insert(0, RTCIceServer(urls=[self.STUN_SERVER_URL]))
        if self.has_turn_server:
            ice_servers.append(RTCIceServer(
                urls=[self.TURN_SERVER_URL],
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL,
            ))
        return RTCConfiguration(iceServers=ice_servers)


# ============================================================
# 피어 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """피어 연결 수명주기 관련 설정."""

    # failed/disconnected 감지 후 재구성까지 대기 (초)
    REBUILD_DELAY: float = float(os.getenv("PEER_REBUILD_DELAY", "1.5"))

    # 연속 재구성 최대 횟수 (0 = 무제한)
    MAX_REBUILD_ATTEMPTS: int = int(os.getenv("PEER_MAX_REBUILD_ATTEMPTS", "0"))


# ============================================================
# 미디어 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """마이크 캡처 및 원격 오디오 재생 장치 설정."""

    # 마이크 장치 (ffmpeg 입력 이름). 비어 있으면 pulse → alsa 순으로 시도
    MICROPHONE_DEVICE: Optional[str] = os.getenv("MICROPHONE_DEVICE")
    MICROPHONE_FORMAT: Optional[str] = os.getenv("MICROPHONE_FORMAT")

    # 원격 오디오 출력 장치. 비어 있으면 MediaBlackhole로 소비
    AUDIO_OUTPUT_DEVICE: Optional[str] = os.getenv("AUDIO_OUTPUT_DEVICE")
    AUDIO_OUTPUT_FORMAT: Optional[str] = os.getenv("AUDIO_OUTPUT_FORMAT")


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
logger.info(
    f"[WebRTC Config] 재구성 지연: {connection_config.REBUILD_DELAY}s, "
    f"최대 재구성: {connection_config.MAX_REBUILD_ATTEMPTS or '무제한'}"
)
