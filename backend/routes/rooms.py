"""오디오 룸 API 라우터.

룸 상태 조회(owner, 활성 플래그, presence)와 서버가 호스팅하는 참가자 세션의
입장/역할 전환/퇴장을 제공합니다.
"""

import logging
from typing import Optional, TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException

from audio_room.database import PostRepository, get_redis_manager
from audio_room.realtime import read_presence
from audio_room.room import RoleTransitionError, SessionClosedError, SessionLimitError
from audio_room.shared import JoinRequest, Participant, Role, RoomStatus, SessionSnapshot
from .deps import verify_auth_header

if TYPE_CHECKING:
    from audio_room.room import AudioRoomSession, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rooms", tags=["rooms"])

# 글로벌 매니저 참조 (app.py에서 설정됨)
_registry: Optional["SessionRegistry"] = None
_repository: Optional[PostRepository] = None


def init_managers(registry: "SessionRegistry", repository: Optional[PostRepository] = None):
    """레지스트리와 레포지토리 인스턴스를 설정합니다.

    Args:
        registry: SessionRegistry 인스턴스
        repository: PostRepository 인스턴스 (None이면 기본 생성)
    """
    global _registry, _repository
    _registry = registry
    _repository = repository or PostRepository()
    logger.info("룸 라우터 매니저 초기화 완료")


def _get_registry() -> "SessionRegistry":
    if _registry is None:
        raise HTTPException(status_code=503, detail="Session registry not initialized")
    return _registry


def _get_session(post_id: str, participant_id: str) -> "AudioRoomSession":
    session = _get_registry().get(post_id, participant_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("")
async def get_hosted_rooms(_: bool = Depends(verify_auth_header)):
    """서버가 호스팅 중인 세션을 룸별로 조회합니다."""
    return {"rooms": _get_registry().get_room_list()}


@router.get("/active")
async def get_active_rooms(
    community_id: Optional[str] = None,
    _: bool = Depends(verify_auth_header),
):
    """audio_room_active 플래그가 켜진 룸 목록을 조회합니다."""
    return {"rooms": await _repository.list_active_rooms(community_id)}


@router.get("/{post_id}", response_model=RoomStatus)
async def get_room_status(post_id: str, _: bool = Depends(verify_auth_header)):
    """룸 owner, 활성 플래그, 현재 presence를 조회합니다."""
    owner_id = await _repository.get_post_owner(post_id)
    active = await _repository.is_audio_room_active(post_id)

    participants = []
    redis_mgr = get_redis_manager()
    if redis_mgr.is_initialized:
        try:
            state = await read_presence(redis_mgr.client, post_id)
        except Exception as e:
            logger.warning(f"[Presence] presence 조회 실패 (post={post_id}): {e}")
            state = {}
        participants = [
            Participant(participant_id=key, role=Role.parse(metas[0].get("role")))
            for key, metas in state.items()
        ]

    return RoomStatus(post_id=post_id, owner_id=owner_id, active=active, participants=participants)


@router.post("/{post_id}/sessions", response_model=SessionSnapshot)
async def join_room(post_id: str, request: JoinRequest, _: bool = Depends(verify_auth_header)):
    """참가자 세션을 만들어 룸에 입장시킵니다."""
    registry = _get_registry()
    try:
        session = await registry.join(post_id, request.participant_id)
    except SessionLimitError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (ConnectionError, RuntimeError) as e:
        logger.error(f"[Room] 세션 입장 실패 (post={post_id}): {e}")
        raise HTTPException(status_code=503, detail="Realtime channel unavailable")
    return session.snapshot()


@router.get("/{post_id}/sessions/{participant_id}", response_model=SessionSnapshot)
async def get_session(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    return _get_session(post_id, participant_id).snapshot()


@router.delete("/{post_id}/sessions/{participant_id}")
async def leave_room(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    """세션을 종료합니다. 정리 단계 실패는 응답에 포함됩니다."""
    report = await _get_registry().leave(post_id, participant_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return report.as_dict()


@router.post("/{post_id}/sessions/{participant_id}/speaker", response_model=SessionSnapshot)
async def become_speaker(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    session = _get_session(post_id, participant_id)
    try:
        return await session.become_speaker()
    except RoleTransitionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{post_id}/sessions/{participant_id}/listener", response_model=SessionSnapshot)
async def become_listener(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    session = _get_session(post_id, participant_id)
    try:
        return await session.become_listener()
    except SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{post_id}/sessions/{participant_id}/end", response_model=SessionSnapshot)
async def end_room(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    """룸을 종료합니다 (owner 세션 전용)."""
    session = _get_session(post_id, participant_id)
    try:
        return await session.end_room()
    except RoleTransitionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{post_id}/sessions/{participant_id}/resume-audio")
async def resume_audio(post_id: str, participant_id: str, _: bool = Depends(verify_auth_header)):
    """차단된 원격 오디오 재생을 다시 시도합니다."""
    session = _get_session(post_id, participant_id)
    blocked = await session.resume_playback()
    return {"blocked": blocked}
