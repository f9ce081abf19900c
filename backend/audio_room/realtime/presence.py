"""룸 presence 추적."""

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from ..shared import Participant, Role

logger = logging.getLogger(__name__)


class PresenceTracker:
    """채널 presence 상태를 참가자 목록으로 평탄화합니다.

    로컬 참가자의 역할은 presence에 반영되기 전일 수 있으므로 항상
    로컬에서 알고 있는 값(``announce``로 마지막에 보낸 역할)을 사용합니다.

    Attributes:
        channel: ``track`` / ``on_presence_sync`` 를 제공하는 실시간 채널
        local_id (str): 로컬 참가자 ID
        on_sync (Optional[Callable]): 참가자 목록이 갱신될 때 호출

    Note:
        - presence 동기화 실패는 호출자에게 전달되지 않음
    """

    def __init__(
        self,
        channel,
        local_id: str,
        on_sync: Optional[Callable[[List[Participant]], Any]] = None,
    ):
        self.channel = channel
        self.local_id = local_id
        self.on_sync = on_sync
        self.local_role: Optional[Role] = None
        self._participants: List[Participant] = []

    def bind(self) -> None:
        self.channel.on_presence_sync(self.handle_sync)

    async def announce(self, role: Role) -> bool:
        """로컬 역할을 presence에 게시합니다."""
        self.local_role = role
        ok = await self.channel.track({"role": role.value})
        logger.info(f"[Presence] [{self.local_id[:8]}] 역할 게시: {role.value} (ok={ok})")
        return ok

    async def handle_sync(self, state: Dict[str, List[dict]]) -> List[Participant]:
        participants = []
        for participant_id, metas in state.items():
            if participant_id == self.local_id and self.local_role is not None:
                role = self.local_role
            else:
                meta = metas[0] if metas else {}
                role = Role.parse(meta.get("role"))
            participants.append(Participant(participant_id=participant_id, role=role))

        self._participants = participants
        logger.info(
            f"[Presence] 참가자 {len(participants)}명: "
            + ", ".join(f"{p.participant_id[:8]}={p.role.value}" for p in participants)
        )
        if self.on_sync is not None:
            result = self.on_sync(list(participants))
            if inspect.isawaitable(result):
                await result
        return list(participants)

    @property
    def participants(self) -> List[Participant]:
        return list(self._participants)

    def role_of(self, participant_id: str) -> Optional[Role]:
        if participant_id == self.local_id and self.local_role is not None:
            return self.local_role
        for participant in self._participants:
            if participant.participant_id == participant_id:
                return participant.role
        return None

    def is_tracked(self) -> bool:
        return any(p.participant_id == self.local_id for p in self._participants)
