"""참가자 역할 상태 머신.

역할 전환 규칙과 룸 활성 플래그 쓰기 요청을 한 곳에서 결정합니다.
실제 플래그 쓰기와 presence 게시는 세션이 수행합니다.

Transitions:
    listener → speaker : owner는 항상, 그 외는 룸이 활성 상태일 때만
    speaker → listener : 누구나. owner면 active=false 요청
    end_room           : owner만. listener로 강제, active=false 요청

Active Flag:
    owner의 첫 speaker 전환에서만 active=true를 요청하며,
    이후 speaker/listener를 반복해도 true는 다시 쓰지 않습니다.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Set

from ..shared import Role

logger = logging.getLogger(__name__)


class RoleTransitionError(Exception):
    """허용되지 않은 역할 전환."""


_TRANSITIONS: Dict[Role, Set[Role]] = {
    Role.LISTENER: {Role.LISTENER, Role.SPEAKER},
    Role.SPEAKER: {Role.SPEAKER, Role.LISTENER},
}


@dataclass(frozen=True)
class RoleTransition:
    """역할 전환 결과.

    Attributes:
        previous (Role): 전환 전 역할
        role (Role): 전환 후 역할
        write_active (Optional[bool]): 룸 활성 플래그 쓰기 요청 (None = 쓰지 않음)
    """

    previous: Role
    role: Role
    write_active: Optional[bool] = None

    @property
    def changed(self) -> bool:
        return self.previous != self.role


class RoleStateMachine:
    """로컬 참가자 한 명의 역할 상태.

    Attributes:
        is_owner (bool): 룸(게시글) owner 여부
        role (Role): 현재 역할
        activated_once (bool): 이 세션에서 active=true를 이미 요청했는지 여부
    """

    def __init__(self, is_owner: bool):
        self.is_owner = is_owner
        self.role = Role.LISTENER
        self.activated_once = False

    def initial(self, auto_speak: bool = False) -> RoleTransition:
        """입장 시 역할을 결정합니다. owner + auto_speak면 speaker로 시작합니다."""
        if self.is_owner and auto_speak:
            return self._apply(Role.SPEAKER, self._activation())
        return self._apply(Role.LISTENER)

    def promote(self, room_active: bool) -> RoleTransition:
        """speaker로 전환합니다.

        Args:
            room_active (bool): 현재 룸 활성 플래그

        Raises:
            RoleTransitionError: owner가 아니고 룸이 아직 활성화되지 않았을 때
        """
        if self.role == Role.SPEAKER:
            return RoleTransition(previous=Role.SPEAKER, role=Role.SPEAKER)
        if not self.is_owner and not room_active:
            raise RoleTransitionError("Only the post owner can start the audio room.")
        return self._apply(Role.SPEAKER, self._activation() if self.is_owner else None)

    def demote(self) -> RoleTransition:
        """listener로 전환합니다. owner면 active=false를 요청합니다."""
        return self._apply(Role.LISTENER, False if self.is_owner else None)

    def end_room(self) -> RoleTransition:
        """룸을 종료합니다 (owner 전용).

        Raises:
            RoleTransitionError: owner가 아닐 때
        """
        if not self.is_owner:
            raise RoleTransitionError("Only the post owner can end the audio room.")
        return self._apply(Role.LISTENER, False)

    def _activation(self) -> Optional[bool]:
        if self.activated_once:
            return None
        self.activated_once = True
        return True

    def _apply(self, role: Role, write_active: Optional[bool] = None) -> RoleTransition:
        if role not in _TRANSITIONS[self.role]:
            raise RoleTransitionError(f"{self.role.value} → {role.value} 전환 불가")
        transition = RoleTransition(previous=self.role, role=role, write_active=write_active)
        self.role = role
        if transition.changed:
            logger.info(
                f"[Room] 역할 전환: {transition.previous.value} → {role.value}"
                + (f" (active={write_active})" if write_active is not None else "")
            )
        return transition
