"""룸 모듈.

역할 상태 머신, 참가자 세션 오케스트레이터, 호스팅 세션 레지스트리를 제공합니다.
"""

from .config import room_config, RoomConfig
from .state import RoleStateMachine, RoleTransition, RoleTransitionError
from .session import AudioRoomSession, SessionClosedError
from .registry import SessionRegistry, SessionLimitError, default_session_factory

__all__ = [
    "room_config",
    "RoomConfig",
    "RoleStateMachine",
    "RoleTransition",
    "RoleTransitionError",
    "AudioRoomSession",
    "SessionClosedError",
    "SessionRegistry",
    "SessionLimitError",
    "default_session_factory",
]
