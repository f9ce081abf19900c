"""WebRTC 모듈.

피어 링크, 피어 연결 풀, 마이크/원격 오디오 트랙 관리 기능을 제공합니다.

Classes:
    PeerLink: 원격 참가자 한 명과의 aiortc 피어 연결
    PeerConnectionPool: 원격 ID별 링크 단일 소유 및 재구성
    LinkState: 링크 수명주기 상태
    MediaTrackManager: speaker 동안의 마이크 보유
    RemoteAudioRegistry: 원격 오디오 스트림 재생
    LocalAudioStream: 마이크 캡처 한 개

Config:
    ice_config: ICE 서버 설정
    connection_config: 피어 재구성 설정
    media_config: 마이크/출력 장치 설정
"""

from .config import (
    ice_config,
    connection_config,
    media_config,
    ICEServerConfig,
    ConnectionConfig,
    MediaConfig,
)
from .peer_link import PeerLink
from .peer_pool import LinkState, PeerConnectionPool, is_initiator, should_connect
from .tracks import (
    LocalAudioStream,
    MediaTrackManager,
    MicrophoneError,
    RemoteAudioRegistry,
    acquire_microphone,
    open_microphone,
)

__all__ = [
    # Classes
    "PeerLink",
    "PeerConnectionPool",
    "LinkState",
    "MediaTrackManager",
    "RemoteAudioRegistry",
    "LocalAudioStream",
    "MicrophoneError",
    # Functions
    "is_initiator",
    "should_connect",
    "acquire_microphone",
    "open_microphone",
    # Config
    "ice_config",
    "connection_config",
    "media_config",
    "ICEServerConfig",
    "ConnectionConfig",
    "MediaConfig",
]
