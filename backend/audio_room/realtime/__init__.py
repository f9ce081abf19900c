"""실시간 채널 모듈.

Redis pub/sub 위의 룸 토픽, presence 추적, signal 중계를 제공합니다.
"""

from .config import channel_config, ChannelConfig
from .channel import (
    RealtimeChannel,
    PresenceState,
    channel_name,
    presence_key,
    read_presence,
    SUBSCRIBED,
    CHANNEL_ERROR,
    CLOSED,
)
from .presence import PresenceTracker
from .signaling import SignalingRelay, SIGNAL_EVENT

__all__ = [
    "channel_config",
    "ChannelConfig",
    "RealtimeChannel",
    "PresenceState",
    "channel_name",
    "presence_key",
    "read_presence",
    "SUBSCRIBED",
    "CHANNEL_ERROR",
    "CLOSED",
    "PresenceTracker",
    "SignalingRelay",
    "SIGNAL_EVENT",
]
