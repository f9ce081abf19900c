"""오디오 룸 참가자 세션.

참가자 한 명의 관점에서 presence, signal 중계, 피어 연결 풀, 마이크,
역할 상태 머신을 묶는 오케스트레이터입니다. 모든 상태 변경은 이벤트
(presence sync, signal 수신, 연결 상태 변경, 타이머)에서 일어나며,
await 지점(owner 조회, 채널 구독, 마이크 획득, 플래그 쓰기) 사이의
임의 인터리빙을 허용하도록 작성되어 있습니다.

Flow:
    1. join(): owner 조회 → presence/signal 바인딩 → 채널 구독 → 초기 역할 게시
    2. presence sync / 역할 변경마다: 링크 계획(생성/정리) → 마이크 평가 디바운스
    3. signal 수신: 해당 원격 ID 링크로 전달 (없으면 responder로 생성)
    4. leave(): best-effort 정리 → CleanupReport

Examples:
    >>> session = AudioRoomSession("post-1", "alice", channel=channel, repository=repo)
    >>> await session.join()
    >>> await session.become_speaker()
    >>> session.snapshot().link_states
    {'bob': 'connected'}
    >>> report = await session.leave()
"""

import logging
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack

from .config import room_config, RoomConfig
from .state import RoleStateMachine, RoleTransition, RoleTransitionError
from ..realtime import PresenceTracker, SignalingRelay
from ..shared import (
    CleanupReport,
    Debouncer,
    Participant,
    Role,
    SessionSnapshot,
    run_best_effort,
)
from ..webrtc import (
    LinkState,
    MediaTrackManager,
    PeerConnectionPool,
    RemoteAudioRegistry,
    should_connect,
)

logger = logging.getLogger(__name__)

MAX_NOTICES = 20
LINK_ABANDONED_NOTICE = "Connection to a participant was lost."


class SessionClosedError(Exception):
    """이미 종료된 세션에 대한 조작."""


class AudioRoomSession:
    """룸 하나에 참가한 로컬 참가자 세션.

    Attributes:
        post_id (str): 룸(게시글) ID
        participant_id (str): 로컬 참가자 ID
        owner_id (Optional[str]): 룸 owner ID (join 후 설정)
        room_active (bool): 마지막으로 알려진 룸 활성 플래그
        joined (bool): join 완료 여부
        closed (bool): leave 호출 여부
    """

    def __init__(
        self,
        post_id: str,
        participant_id: str,
        *,
        channel,
        repository,
        link_factory=None,
        microphone_factory=None,
        sink_factory=None,
        config: RoomConfig = room_config,
        rebuild_delay: Optional[float] = None,
        max_rebuild_attempts: Optional[int] = None,
    ):
        self.post_id = post_id
        self.participant_id = participant_id
        self.channel = channel
        self.repository = repository
        self.config = config

        self.owner_id: Optional[str] = None
        self.room_active = False
        self.joined = False
        self.closed = False
        self._state = RoleStateMachine(is_owner=False)
        self._notices: List[str] = []

        self.presence = PresenceTracker(channel, participant_id, on_sync=self._on_presence_sync)
        self.relay = SignalingRelay(channel, participant_id, on_signal=self._on_signal)
        self.pool = PeerConnectionPool(
            participant_id,
            link_factory=link_factory,
            on_signal=self._send_signal,
            on_stream=self._on_remote_stream,
            on_stream_removed=self._on_remote_stream_removed,
            on_link_abandoned=self._on_link_abandoned,
            rebuild_delay=rebuild_delay,
            max_rebuild_attempts=max_rebuild_attempts,
        )
        self.media = MediaTrackManager(
            self.pool,
            role_provider=lambda: Role.LISTENER if self.closed else self.role,
            microphone_factory=microphone_factory,
            on_notice=self._notify,
        )
        self.remote_audio = RemoteAudioRegistry(sink_factory=sink_factory, on_notice=self._notify)
        self._mic_debounce = Debouncer(config.ROLE_DEBOUNCE, name=f"mic:{participant_id[:8]}")

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    @property
    def role(self) -> Role:
        return self._state.role

    @property
    def is_owner(self) -> bool:
        return self._state.is_owner

    @property
    def participants(self) -> List[Participant]:
        return self.presence.participants

    @property
    def remote_streams(self) -> Dict[str, MediaStreamTrack]:
        return self.remote_audio.streams

    @property
    def link_states(self) -> Dict[str, str]:
        return self.pool.states()

    @property
    def notices(self) -> List[str]:
        return list(self._notices)

    def snapshot(self) -> SessionSnapshot:
        """UI 레이어용 현재 상태."""
        return SessionSnapshot(
            post_id=self.post_id,
            participant_id=self.participant_id,
            is_owner=self.is_owner,
            role=self.role,
            room_active=self.room_active,
            participants=self.participants,
            remote_streams=sorted(self.remote_audio.streams.keys()),
            blocked_streams=self.remote_audio.blocked,
            link_states=self.link_states,
            has_microphone=self.media.has_microphone,
            notices=self.notices,
        )

    # ------------------------------------------------------------------
    # 입장/퇴장
    # ------------------------------------------------------------------

    async def join(self) -> SessionSnapshot:
        """룸에 입장합니다.

        Returns:
            SessionSnapshot: 입장 직후 상태

        Raises:
            SessionClosedError: 이미 종료된 세션
            ConnectionError: 채널 구독 실패
        """
        if self.closed:
            raise SessionClosedError(f"세션이 이미 종료됨: {self.participant_id}")
        if self.joined:
            return self.snapshot()

        self.owner_id = await self.repository.get_post_owner(self.post_id)
        if self.owner_id is None:
            logger.warning(f"[Room] [{self.post_id}] owner를 알 수 없음, 일반 참가자로 입장")
        self._state = RoleStateMachine(is_owner=self.owner_id == self.participant_id)
        self.room_active = await self.repository.is_audio_room_active(self.post_id)
        if self.closed:
            return self.snapshot()

        self.presence.bind()
        self.relay.bind()
        if not await self.channel.subscribe():
            raise ConnectionError(f"룸 채널 구독 실패: {self.post_id}")
        if self.closed:
            # 구독 중에 leave()가 먼저 끝남
            await self.channel.unsubscribe()
            return self.snapshot()

        self.joined = True
        transition = self._state.initial(auto_speak=self.config.OWNER_AUTO_SPEAK)
        await self._commit(transition, force_announce=True)

        logger.info(
            f"[Room] [{self.post_id}] {self.participant_id[:8]} 입장 "
            f"(owner={self.is_owner}, role={self.role.value}, active={self.room_active})"
        )
        return self.snapshot()

    async def leave(self) -> CleanupReport:
        """룸에서 나갑니다. 각 정리 단계의 실패는 보고서에 기록만 됩니다.

        Returns:
            CleanupReport: 단계별 정리 결과. 두 번째 호출부터는 빈 보고서
        """
        if self.closed:
            return CleanupReport()
        self.closed = True

        steps = [
            ("unsubscribe", self.channel.unsubscribe),
            ("destroy_links", self.pool.destroy_all),
            ("stop_mic", self.media.stop_mic),
            ("clear_remote_streams", self.remote_audio.clear),
            ("cancel_debounce", self._mic_debounce.cancel),
        ]
        if self.is_owner:
            steps.append(("deactivate_room", self._deactivate_room))

        report = await run_best_effort(steps, label=f"leave:{self.participant_id[:8]}")
        logger.info(
            f"[Room] [{self.post_id}] {self.participant_id[:8]} 퇴장 "
            f"(정리 실패 {len(report.failures)}건)"
        )
        return report

    async def _deactivate_room(self) -> None:
        if not await self.repository.set_audio_room_active(self.post_id, self.owner_id, False):
            raise RuntimeError("audio_room_active=false 쓰기 실패")
        self.room_active = False

    # ------------------------------------------------------------------
    # 역할 전환
    # ------------------------------------------------------------------

    async def become_speaker(self) -> SessionSnapshot:
        """speaker로 전환합니다.

        Raises:
            RoleTransitionError: owner가 아니고 룸이 아직 활성화되지 않았을 때
        """
        self._ensure_open()
        if self.is_owner:
            room_active = True
        else:
            room_active = await self.repository.is_audio_room_active(self.post_id)
            self.room_active = room_active
            self._ensure_open()

        try:
            transition = self._state.promote(room_active)
        except RoleTransitionError:
            logger.info(f"[Room] [{self.participant_id[:8]}] speaker 전환 거부 (룸 비활성)")
            raise
        await self._commit(transition)
        return self.snapshot()

    async def become_listener(self) -> SessionSnapshot:
        self._ensure_open()
        await self._commit(self._state.demote())
        return self.snapshot()

    async def end_room(self) -> SessionSnapshot:
        """룸을 종료합니다 (owner 전용). 마이크를 즉시 끄고 listener로 돌아갑니다."""
        self._ensure_open()
        transition = self._state.end_room()
        self._mic_debounce.cancel()
        self.media.stop_mic()
        await self._commit(transition, force_announce=True)
        return self.snapshot()

    async def resume_playback(self) -> List[str]:
        """차단된 원격 오디오 재생을 다시 시도합니다. 예외를 던지지 않습니다."""
        return await self.remote_audio.resume_playback()

    async def _commit(self, transition: RoleTransition, force_announce: bool = False) -> None:
        if transition.changed or force_announce:
            await self.presence.announce(transition.role)
            await self._plan_links()
            self._schedule_mic()

        if transition.write_active is not None and self.owner_id is not None:
            ok = await self.repository.set_audio_room_active(
                self.post_id, self.owner_id, transition.write_active
            )
            if ok:
                self.room_active = transition.write_active

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"세션이 이미 종료됨: {self.participant_id}")
        if not self.joined:
            raise SessionClosedError(f"아직 입장하지 않은 세션: {self.participant_id}")

    # ------------------------------------------------------------------
    # 링크 계획 / 마이크
    # ------------------------------------------------------------------

    async def _on_presence_sync(self, participants: List[Participant]) -> None:
        if self.closed or not self.joined:
            return
        await self._plan_links()
        self._schedule_mic()

    async def _plan_links(self) -> None:
        """연결 대상 링크를 만들고, 떠났거나 대상이 아닌 링크를 정리합니다."""
        local_role = self.role
        remote_roles = {
            p.participant_id: p.role
            for p in self.presence.participants
            if p.participant_id != self.participant_id
        }

        for remote_id in self.pool.remote_ids():
            remote_role = remote_roles.get(remote_id)
            if remote_role is None or not should_connect(local_role, remote_role):
                await self.pool.remove(remote_id)

        targets = [rid for rid, role in remote_roles.items() if should_connect(local_role, role)]
        logger.debug(
            f"[Room] [{self.participant_id[:8]}] 링크 계획: role={local_role.value}, "
            f"targets={[rid[:8] for rid in targets]}"
        )
        for remote_id in targets:
            if self.closed:
                return
            if remote_id not in self.pool:
                await self.pool.upsert(remote_id)

    def _schedule_mic(self) -> None:
        if not self.closed:
            self._mic_debounce.call(self._evaluate_mic)

    async def _evaluate_mic(self) -> None:
        if self.closed:
            return
        if self.role == Role.SPEAKER:
            await self.media.start_mic()
        else:
            self.media.stop_mic()

    # ------------------------------------------------------------------
    # Signal / 원격 스트림
    # ------------------------------------------------------------------

    async def _on_signal(self, remote_id: str, data: dict) -> None:
        if self.closed or not self.joined:
            return

        link = self.pool.get(remote_id)
        if link is None:
            remote_role = self.presence.role_of(remote_id)
            if remote_role is not None and not should_connect(self.role, remote_role):
                logger.info(f"[Signal] listener 간 signal 무시: {remote_id[:8]}")
                return
            logger.info(f"[Signal] {remote_id[:8]}의 signal로 responder 링크 생성")
            link = await self.pool.upsert(remote_id, initiator=False)
        elif data.get("type") == "offer" and self.pool.state(remote_id) in (
            LinkState.FAILED, LinkState.DISCONNECTED,
        ):
            # 상대가 먼저 재구성해 새 offer를 보냄
            link = await self.pool.rebuild(remote_id) or link

        await link.signal(data)

    async def _send_signal(self, remote_id: str, data: dict) -> None:
        if self.closed:
            return
        await self.relay.send(data, to=remote_id)

    async def _on_remote_stream(self, remote_id: str, track: MediaStreamTrack) -> None:
        if self.closed:
            return
        await self.remote_audio.attach(remote_id, track)

    async def _on_remote_stream_removed(self, remote_id: str) -> None:
        await self.remote_audio.purge(remote_id)

    def _on_link_abandoned(self, remote_id: str) -> None:
        self._notify(LINK_ABANDONED_NOTICE)

    def _notify(self, message: str) -> None:
        self._notices.append(message)
        del self._notices[:-MAX_NOTICES]
        logger.info(f"[Room] [{self.participant_id[:8]}] 알림: {message}")
