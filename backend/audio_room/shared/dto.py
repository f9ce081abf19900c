"""Lightweight shared DTOs for presence, signaling and the HTTP layer."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """오디오 룸 참가자 역할."""

    SPEAKER = "speaker"
    LISTENER = "listener"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """알 수 없는 값은 listener로 취급합니다."""
        try:
            return cls(value)
        except ValueError:
            return cls.LISTENER


class Participant(BaseModel):
    """presence 상태를 평탄화한 참가자 한 명."""

    model_config = ConfigDict(frozen=True)

    participant_id: str = Field(description="프로필 ID (presence key)")
    role: Role = Field(default=Role.LISTENER, description="speaker 또는 listener")


class SignalEnvelope(BaseModel):
    """브로드캐스트 채널로 전달되는 협상 메시지 봉투.

    wire 포맷은 ``{"from": str, "data": dict}`` 이며, 받는 쪽을 지정할 때만
    ``"to"`` 가 추가됩니다. ``to`` 가 없는 메시지는 모든 참가자가 받습니다.
    """

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from", min_length=1)
    recipient: Optional[str] = Field(default=None, alias="to")
    data: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def addressed_to(self, participant_id: str) -> bool:
        return self.recipient is None or self.recipient == participant_id


class JoinRequest(BaseModel):
    """호스팅 세션 생성 요청."""

    participant_id: str = Field(min_length=1, description="참가할 프로필 ID")


class SessionSnapshot(BaseModel):
    """UI 레이어에 노출되는 세션 상태."""

    post_id: str
    participant_id: str
    is_owner: bool
    role: Role
    room_active: bool
    participants: List[Participant] = Field(default_factory=list)
    remote_streams: List[str] = Field(default_factory=list)
    blocked_streams: List[str] = Field(default_factory=list)
    link_states: Dict[str, str] = Field(default_factory=dict)
    has_microphone: bool = False
    notices: List[str] = Field(default_factory=list)


class RoomStatus(BaseModel):
    """룸 외부에서 보이는 상태 (owner, active 플래그, presence)."""

    post_id: str
    owner_id: Optional[str] = None
    active: bool = False
    participants: List[Participant] = Field(default_factory=list)
