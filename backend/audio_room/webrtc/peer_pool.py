"""오디오 룸 피어 연결 풀.

원격 참가자 ID마다 PeerLink를 최대 하나만 소유하고, 링크 생성/재구성/종료를
한 곳에서 처리합니다. 세션의 여러 콜백 지점(presence, signal, 상태 변경, 타이머)은
모두 이 풀의 작은 API(upsert, remove, rebuild)를 통해서만 링크를 바꿉니다.

Link Lifecycle:
    none → connecting → connected → (failed|disconnected) → rebuilding
         → connecting → ... → closed

Mesh Policy:
    - 로컬 또는 원격 중 한쪽이라도 speaker면 링크를 만든다
    - listener끼리는 연결하지 않는다 (speaker × 참가자 규모로 제한)
    - initiator는 ``local_id < remote_id`` 로 양쪽이 독립적으로 같은 답을 얻는다

Examples:
    >>> pool = PeerConnectionPool("alice", on_signal=relay_send, on_stream=attach_remote)
    >>> await pool.upsert("bob")          # alice < bob → alice가 offer
    >>> pool.state("bob")
    <LinkState.CONNECTING: 'connecting'>
    >>> await pool.destroy_all()
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack

from .config import connection_config
from .peer_link import PeerLink
from ..shared import Role

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    """원격 ID 하나에 대한 링크 상태."""

    NONE = "none"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"
    REBUILDING = "rebuilding"
    CLOSED = "closed"


_TRANSITIONS: Dict[LinkState, Set[LinkState]] = {
    LinkState.NONE: {LinkState.CONNECTING, LinkState.CLOSED},
    LinkState.CONNECTING: {
        LinkState.CONNECTED, LinkState.FAILED, LinkState.DISCONNECTED, LinkState.CLOSED,
    },
    LinkState.CONNECTED: {LinkState.FAILED, LinkState.DISCONNECTED, LinkState.CLOSED},
    LinkState.FAILED: {LinkState.REBUILDING, LinkState.CLOSED},
    LinkState.DISCONNECTED: {
        LinkState.CONNECTED, LinkState.FAILED, LinkState.REBUILDING, LinkState.CLOSED,
    },
    LinkState.REBUILDING: {LinkState.CONNECTING, LinkState.CLOSED},
    LinkState.CLOSED: set(),
}

_BROKEN_STATES = ("failed", "disconnected")


def is_initiator(local_id: str, remote_id: str) -> bool:
    """두 참가자 중 offer를 만드는 쪽인지 판단합니다 (문자열 순서)."""
    return local_id < remote_id


def should_connect(local_role: Role, remote_role: Role) -> bool:
    """두 참가자 사이에 링크가 필요한지 판단합니다."""
    return local_role == Role.SPEAKER or remote_role == Role.SPEAKER


LinkFactory = Callable[[str, bool], PeerLink]


class PeerConnectionPool:
    """원격 ID → PeerLink 단일 소유 매핑.

    Attributes:
        local_id (str): 로컬 참가자 ID
        rebuild_delay (float): 링크 고장 감지 후 재구성까지 대기 시간 (초)
        max_rebuild_attempts (int): 연속 재구성 최대 횟수 (0 = 무제한)

    Callbacks:
        on_signal(remote_id, data): 링크가 만든 협상 메시지 (relay로 전송)
        on_stream(remote_id, track): 원격 오디오 트랙 수신
        on_stream_removed(remote_id): 링크 재구성/제거로 원격 스트림 폐기
        on_link_abandoned(remote_id): 재구성 한도 도달로 링크 포기

    Note:
        - 콜백은 동기/비동기 모두 허용 (코루틴이면 태스크로 실행)
        - 교체된 링크에서 늦게 도착한 이벤트는 무시됨
    """

    def __init__(
        self,
        local_id: str,
        *,
        link_factory: Optional[LinkFactory] = None,
        on_signal: Optional[Callable[[str, dict], Any]] = None,
        on_stream: Optional[Callable[[str, MediaStreamTrack], Any]] = None,
        on_stream_removed: Optional[Callable[[str], Any]] = None,
        on_link_abandoned: Optional[Callable[[str], Any]] = None,
        rebuild_delay: Optional[float] = None,
        max_rebuild_attempts: Optional[int] = None,
    ):
        self.local_id = local_id
        self.link_factory: LinkFactory = link_factory or (
            lambda remote_id, initiator: PeerLink(remote_id, initiator)
        )
        self.on_signal = on_signal
        self.on_stream = on_stream
        self.on_stream_removed = on_stream_removed
        self.on_link_abandoned = on_link_abandoned
        self.rebuild_delay = (
            connection_config.REBUILD_DELAY if rebuild_delay is None else rebuild_delay
        )
        self.max_rebuild_attempts = (
            connection_config.MAX_REBUILD_ATTEMPTS
            if max_rebuild_attempts is None else max_rebuild_attempts
        )

        # remote_id -> PeerLink
        self._links: Dict[str, PeerLink] = {}

        # remote_id -> LinkState
        self._states: Dict[str, LinkState] = {}

        # remote_id -> pending rebuild task (중복 예약 방지)
        self._rebuild_tasks: Dict[str, asyncio.Task] = {}

        # remote_id -> 연속 재구성 횟수 (connected 도달 시 초기화)
        self._rebuild_attempts: Dict[str, int] = {}

        # 로컬 오디오 소스: 링크마다 독립 구독 트랙을 만들어 준다
        self._local_source: Optional[Callable[[], MediaStreamTrack]] = None

        # 콜백 태스크 참조 유지 (GC 방지)
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._links

    def __len__(self) -> int:
        return len(self._links)

    def get(self, remote_id: str) -> Optional[PeerLink]:
        return self._links.get(remote_id)

    def remote_ids(self) -> List[str]:
        return list(self._links.keys())

    def state(self, remote_id: str) -> LinkState:
        return self._states.get(remote_id, LinkState.NONE)

    def states(self) -> Dict[str, str]:
        return {rid: state.value for rid, state in self._states.items() if rid in self._links}

    def rebuild_pending(self, remote_id: str) -> bool:
        task = self._rebuild_tasks.get(remote_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # 링크 생성/제거
    # ------------------------------------------------------------------

    async def upsert(self, remote_id: str, *, initiator: Optional[bool] = None) -> PeerLink:
        """원격 ID의 링크를 반환하고, 없으면 새로 만듭니다.

        Args:
            remote_id (str): 원격 참가자 ID
            initiator (Optional[bool]): None이면 ID 순서 규칙을 따름.
                signal을 먼저 받아 생성하는 경우 False (responder)

        Returns:
            PeerLink: 기존 링크 또는 새로 시작한 링크
        """
        existing = self._links.get(remote_id)
        if existing is not None:
            return existing

        if remote_id == self.local_id:
            raise ValueError("자기 자신과는 링크를 만들 수 없습니다")

        if initiator is None:
            initiator = is_initiator(self.local_id, remote_id)
        return await self._open(remote_id, initiator)

    async def remove(self, remote_id: str) -> None:
        """링크를 제거하고 원격 스트림을 폐기합니다. 없는 ID도 안전합니다."""
        self._cancel_rebuild(remote_id)
        self._rebuild_attempts.pop(remote_id, None)
        link = self._links.pop(remote_id, None)
        if link is None:
            self._states.pop(remote_id, None)
            return

        self._set_state(remote_id, LinkState.CLOSED)
        self._states.pop(remote_id, None)
        try:
            await link.destroy()
        finally:
            self._dispatch(self.on_stream_removed, remote_id)
            logger.info(f"[WebRTC] 링크 제거: {remote_id[:8]} (남은 링크 {len(self._links)})")

    async def destroy_all(self) -> None:
        """모든 링크를 종료하고 풀을 비웁니다. 부분 정리 상태를 남기지 않습니다."""
        for task in list(self._rebuild_tasks.values()):
            task.cancel()
        self._rebuild_tasks.clear()
        self._rebuild_attempts.clear()

        links = list(self._links.items())
        self._links.clear()
        self._states.clear()

        errors = []
        for remote_id, link in links:
            try:
                await link.destroy()
            except Exception as e:
                errors.append(remote_id)
                logger.warning(f"[WebRTC] 링크 {remote_id[:8]} 종료 중 오류: {e}")

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.info(f"[WebRTC] 전체 링크 종료: {len(links)}개 (오류 {len(errors)}개)")

    # ------------------------------------------------------------------
    # 재구성
    # ------------------------------------------------------------------

    def schedule_rebuild(self, remote_id: str) -> bool:
        """``rebuild_delay`` 후 재구성을 예약합니다.

        Returns:
            bool: 새로 예약했으면 True, 이미 예약되어 있거나 링크가 없으면 False
        """
        if remote_id not in self._links or self.rebuild_pending(remote_id):
            return False

        task = asyncio.create_task(self._delayed_rebuild(remote_id))
        self._rebuild_tasks[remote_id] = task
        logger.info(f"[WebRTC] [{remote_id[:8]}] {self.rebuild_delay}s 후 재구성 예약")
        return True

    async def rebuild(self, remote_id: str) -> Optional[PeerLink]:
        """기존 링크를 버리고 같은 initiator 규칙으로 새 링크를 만듭니다.

        Returns:
            Optional[PeerLink]: 새 링크. 링크가 없거나 재구성 한도에 도달하면 None
        """
        current = self._links.get(remote_id)
        if current is None:
            return None
        self._cancel_rebuild(remote_id)

        attempts = self._rebuild_attempts.get(remote_id, 0) + 1
        if self.max_rebuild_attempts and attempts > self.max_rebuild_attempts:
            logger.warning(
                f"[WebRTC] [{remote_id[:8]}] 재구성 한도 도달 "
                f"({self.max_rebuild_attempts}회), 링크 포기"
            )
            await self.remove(remote_id)
            self._dispatch(self.on_link_abandoned, remote_id)
            return None

        logger.info(f"[WebRTC] [{remote_id[:8]}] 피어 재구성 중... (시도 {attempts})")
        self._set_state(remote_id, LinkState.REBUILDING)
        del self._links[remote_id]
        try:
            await current.destroy()
        except Exception as e:
            logger.debug(f"[WebRTC] [{remote_id[:8]}] 이전 링크 종료 오류 무시: {e}")
        self._dispatch(self.on_stream_removed, remote_id)

        fresh = await self._open(remote_id, is_initiator(self.local_id, remote_id))
        self._rebuild_attempts[remote_id] = attempts
        return fresh

    async def _delayed_rebuild(self, remote_id: str) -> None:
        try:
            await asyncio.sleep(self.rebuild_delay)
        except asyncio.CancelledError:
            return
        self._rebuild_tasks.pop(remote_id, None)

        if self.state(remote_id) not in (LinkState.FAILED, LinkState.DISCONNECTED):
            # 대기 중 스스로 복구된 링크는 그대로 둔다
            logger.info(f"[WebRTC] [{remote_id[:8]}] 재구성 취소 (상태 {self.state(remote_id).value})")
            return
        try:
            await self.rebuild(remote_id)
        except Exception as e:
            logger.error(f"[WebRTC] [{remote_id[:8]}] 재구성 실패: {e}", exc_info=True)

    def _cancel_rebuild(self, remote_id: str) -> None:
        task = self._rebuild_tasks.pop(remote_id, None)
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # 로컬 오디오
    # ------------------------------------------------------------------

    def attach_local_source(self, source: Callable[[], MediaStreamTrack]) -> None:
        """로컬 오디오 소스를 등록하고 열린 모든 링크에 붙입니다.

        Args:
            source: 호출할 때마다 링크 하나에 줄 트랙을 반환 (MediaRelay 구독)
        """
        self._local_source = source
        for remote_id, link in self._links.items():
            self._attach_to(remote_id, link)

    def detach_local_source(self) -> None:
        """로컬 오디오 소스를 해제하고 모든 링크에서 트랙을 떼어냅니다."""
        self._local_source = None
        for remote_id, link in self._links.items():
            try:
                link.remove_tracks()
            except Exception as e:
                logger.debug(f"[WebRTC] [{remote_id[:8]}] 트랙 제거 오류 무시: {e}")

    @property
    def has_local_source(self) -> bool:
        return self._local_source is not None

    def _attach_to(self, remote_id: str, link: PeerLink) -> None:
        if self._local_source is None:
            return
        try:
            link.add_track(self._local_source())
        except Exception as e:
            logger.warning(f"[WebRTC] [{remote_id[:8]}] 로컬 트랙 추가 실패: {e}")

    # ------------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------------

    async def _open(self, remote_id: str, initiator: bool) -> PeerLink:
        link = self.link_factory(remote_id, initiator)
        self._links[remote_id] = link
        self._bind(remote_id, link)
        self._set_state(remote_id, LinkState.CONNECTING)
        logger.info(f"[WebRTC] 링크 생성: {remote_id[:8]} (initiator={initiator})")

        self._attach_to(remote_id, link)
        await link.start()
        return link

    def _bind(self, remote_id: str, link: PeerLink) -> None:
        def current() -> bool:
            return self._links.get(remote_id) is link

        def on_signal(data: dict):
            if current():
                self._dispatch(self.on_signal, remote_id, data)

        def on_stream(track: MediaStreamTrack):
            if current():
                self._dispatch(self.on_stream, remote_id, track)

        def on_state(state: str):
            if current():
                self._handle_transport_state(remote_id, state)

        def on_error(error: Exception):
            logger.warning(f"[WebRTC] [{remote_id[:8]}] 피어 오류: {error}")

        link.on("signal", on_signal)
        link.on("stream", on_stream)
        link.on("statechange", on_state)
        link.on("icestatechange", on_state)
        link.on("error", on_error)

    def _handle_transport_state(self, remote_id: str, state: str) -> None:
        if state in ("connected", "completed"):
            if self.state(remote_id) != LinkState.CONNECTED:
                self._set_state(remote_id, LinkState.CONNECTED)
                self._rebuild_attempts.pop(remote_id, None)
            return

        if state in _BROKEN_STATES:
            new_state = LinkState.FAILED if state == "failed" else LinkState.DISCONNECTED
            if self.state(remote_id) != new_state:
                self._set_state(remote_id, new_state)
            self.schedule_rebuild(remote_id)

    def _set_state(self, remote_id: str, new_state: LinkState) -> bool:
        old_state = self.state(remote_id)
        if new_state not in _TRANSITIONS[old_state] and old_state != LinkState.CLOSED:
            logger.warning(
                f"[WebRTC] [{remote_id[:8]}] 허용되지 않은 상태 전이 무시: "
                f"{old_state.value} → {new_state.value}"
            )
            return False
        if old_state == LinkState.CLOSED and new_state != LinkState.CONNECTING:
            return False
        self._states[remote_id] = new_state
        logger.debug(f"[WebRTC] [{remote_id[:8]}] 상태: {old_state.value} → {new_state.value}")
        return True

    def _dispatch(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"[WebRTC] 콜백 오류: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[WebRTC] 콜백 태스크 오류: {error}", exc_info=error)
