"""오디오 트랙 관리 모듈.

로컬 마이크 캡처(speaker일 때만 보유)와 원격 오디오 스트림 재생을 담당합니다.

- ``MediaTrackManager``: 마이크 획득/해제 및 피어 풀에 로컬 소스 연결
- ``RemoteAudioRegistry``: 원격 ID별 수신 트랙과 재생 싱크 관리
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay

from .config import media_config
from ..shared import Role

logger = logging.getLogger(__name__)

MICROPHONE_DENIED_NOTICE = "Please allow microphone access to speak."
PLAYBACK_BLOCKED_NOTICE = "Tap to enable audio."


class MicrophoneError(Exception):
    """마이크 장치를 열 수 없음 (권한 거부, 장치 없음, 백엔드 미지원)."""


class LocalAudioStream:
    """마이크 캡처 한 개.

    원본 트랙은 하나만 유지하고, 피어 링크마다 ``MediaRelay`` 구독 트랙을
    나눠 줍니다.

    Attributes:
        track (MediaStreamTrack): 원본 마이크 트랙
        player (Optional[MediaPlayer]): 트랙을 소유한 플레이어
        backend (Optional[str]): 사용된 ffmpeg 입력 포맷
    """

    def __init__(
        self,
        track: MediaStreamTrack,
        player: Optional[MediaPlayer] = None,
        backend: Optional[str] = None,
    ):
        self.track = track
        self.player = player
        self.backend = backend
        self._relay = MediaRelay()
        self._subscriptions: List[MediaStreamTrack] = []

    @property
    def live(self) -> bool:
        return self.track.readyState == "live"

    def subscribe(self) -> MediaStreamTrack:
        """링크 하나에 붙일 구독 트랙을 만듭니다."""
        track = self._relay.subscribe(self.track)
        self._subscriptions.append(track)
        return track

    def stop(self) -> None:
        """구독 트랙과 원본 트랙을 모두 중지합니다."""
        for track in self._subscriptions:
            track.stop()
        self._subscriptions.clear()
        self.track.stop()


def open_microphone() -> LocalAudioStream:
    """마이크 캡처를 엽니다. 설정된 장치 → pulse → alsa 순서로 시도합니다.

    Returns:
        LocalAudioStream: 열린 마이크 스트림

    Raises:
        MicrophoneError: 모든 후보가 실패하거나 오디오 트랙이 없을 때
    """
    candidates = []
    if media_config.MICROPHONE_DEVICE:
        candidates.append((media_config.MICROPHONE_DEVICE, media_config.MICROPHONE_FORMAT))
    candidates.append(("default", "pulse"))
    candidates.append(("default", "alsa"))

    errors = []
    for device, fmt in candidates:
        try:
            player = MediaPlayer(device, format=fmt)
        except Exception as e:
            errors.append(f"{fmt}:{device} ({e})")
            continue
        if player.audio is None:
            errors.append(f"{fmt}:{device} (오디오 트랙 없음)")
            continue
        logger.info(f"[Mic] 마이크 열림: {fmt}:{device}")
        return LocalAudioStream(player.audio, player=player, backend=fmt)

    raise MicrophoneError("마이크를 열 수 없습니다: " + ", ".join(errors))


async def acquire_microphone() -> LocalAudioStream:
    """장치 열기는 블로킹이므로 executor에서 실행합니다."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, open_microphone)


class MediaTrackManager:
    """speaker 역할 동안만 마이크를 보유하고 피어 링크에 연결합니다.

    Attributes:
        pool: ``attach_local_source`` / ``detach_local_source`` 를 제공하는 피어 풀
        role_provider (Callable[[], Role]): 현재 로컬 역할 조회
        microphone_factory: 마이크 스트림을 여는 코루틴 함수
        on_notice (Optional[Callable[[str], Any]]): 사용자 알림 콜백

    Note:
        - start_mic()는 역할이 speaker가 아니면 아무것도 하지 않음
        - 장치 획득을 기다리는 동안 역할이 바뀌면 획득한 캡처를 바로 해제
        - 획득 실패는 재시도하지 않으며 역할도 바꾸지 않음
    """

    def __init__(
        self,
        pool,
        role_provider: Callable[[], Role],
        microphone_factory: Optional[Callable[[], Awaitable[LocalAudioStream]]] = None,
        on_notice: Optional[Callable[[str], Any]] = None,
    ):
        self.pool = pool
        self.role_provider = role_provider
        self.microphone_factory = microphone_factory or acquire_microphone
        self.on_notice = on_notice
        self._stream: Optional[LocalAudioStream] = None
        self._lock = asyncio.Lock()

    @property
    def local_stream(self) -> Optional[LocalAudioStream]:
        return self._stream

    @property
    def has_microphone(self) -> bool:
        return self._stream is not None

    async def start_mic(self) -> bool:
        """마이크를 켜고 모든 링크에 연결합니다.

        Returns:
            bool: 호출 후 마이크를 보유하고 있으면 True
        """
        async with self._lock:
            if self.role_provider() != Role.SPEAKER:
                return False
            if self._stream is not None:
                return True

            try:
                stream = await self.microphone_factory()
            except Exception as e:
                logger.warning(f"[Mic] 마이크 획득 실패: {e}")
                if self.on_notice is not None:
                    self.on_notice(MICROPHONE_DENIED_NOTICE)
                return False

            if self.role_provider() != Role.SPEAKER:
                logger.info("[Mic] 획득 중 역할 변경됨, 마이크 즉시 해제")
                stream.stop()
                return False

            self._stream = stream
            self.pool.attach_local_source(stream.subscribe)
            logger.info(f"[Mic] 마이크 시작 (링크 {len(self.pool)}개에 연결)")
            return True

    def stop_mic(self) -> None:
        """마이크를 해제합니다. 보유하지 않았어도 안전합니다."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            self.pool.detach_local_source()
        finally:
            stream.stop()
            logger.info("[Mic] 마이크 중지")


def create_audio_sink():
    """원격 오디오를 소비할 싱크를 만듭니다.

    출력 장치가 설정되어 있으면 ``MediaRecorder``, 아니면 ``MediaBlackhole``.
    """
    if media_config.AUDIO_OUTPUT_DEVICE:
        return MediaRecorder(
            media_config.AUDIO_OUTPUT_DEVICE,
            format=media_config.AUDIO_OUTPUT_FORMAT,
        )
    return MediaBlackhole()


class RemoteAudioRegistry:
    """원격 ID → 수신 오디오 트랙.

    각 트랙은 싱크로 재생되며, 싱크 시작이 실패한 스트림은 blocked로 표시되어
    ``resume_playback()``으로 다시 시도할 수 있습니다.

    Attributes:
        sink_factory (Callable[[], Any]): ``addTrack``/``start``/``stop`` 을 가진 싱크 생성
        on_change (Optional[Callable[[], Any]]): 스트림 목록이 바뀔 때 호출
        on_notice (Optional[Callable[[str], Any]]): 재생 차단 알림 콜백
    """

    def __init__(
        self,
        sink_factory: Optional[Callable[[], Any]] = None,
        on_change: Optional[Callable[[], Any]] = None,
        on_notice: Optional[Callable[[str], Any]] = None,
    ):
        self.sink_factory = sink_factory or create_audio_sink
        self.on_change = on_change
        self.on_notice = on_notice
        self._streams: Dict[str, MediaStreamTrack] = {}
        self._sinks: Dict[str, Any] = {}
        self._blocked: Set[str] = set()

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._streams

    @property
    def streams(self) -> Dict[str, MediaStreamTrack]:
        return dict(self._streams)

    @property
    def blocked(self) -> List[str]:
        return sorted(self._blocked)

    async def attach(self, remote_id: str, track: MediaStreamTrack) -> None:
        """원격 트랙을 등록하고 재생을 시작합니다. 같은 ID의 이전 트랙은 교체됩니다."""
        if remote_id in self._streams:
            await self._stop_sink(remote_id)
        self._streams[remote_id] = track
        logger.info(f"[Audio] 원격 스트림 등록: {remote_id[:8]}")

        await self._play(remote_id)
        self._changed()

    async def purge(self, remote_id: str) -> None:
        """원격 트랙을 제거합니다. 없는 ID도 안전합니다."""
        if remote_id not in self._streams:
            return
        await self._stop_sink(remote_id)
        self._streams.pop(remote_id, None)
        self._blocked.discard(remote_id)
        logger.info(f"[Audio] 원격 스트림 제거: {remote_id[:8]}")
        self._changed()

    async def clear(self) -> None:
        for remote_id in list(self._streams.keys()):
            await self.purge(remote_id)

    async def resume_playback(self) -> List[str]:
        """차단된 스트림의 재생을 다시 시도합니다. 예외를 던지지 않습니다.

        Returns:
            List[str]: 재시도 후에도 차단된 원격 ID
        """
        for remote_id in list(self._blocked):
            if remote_id not in self._streams:
                self._blocked.discard(remote_id)
                continue
            await self._play(remote_id)
        return self.blocked

    async def _play(self, remote_id: str) -> None:
        track = self._streams[remote_id]
        sink = None
        try:
            sink = self.sink_factory()
            sink.addTrack(track)
            await sink.start()
        except Exception as e:
            logger.warning(f"[Audio] [{remote_id[:8]}] 재생 시작 실패 (blocked): {e}")
            self._blocked.add(remote_id)
            if self.on_notice is not None:
                self.on_notice(PLAYBACK_BLOCKED_NOTICE)
            return

        self._sinks[remote_id] = sink
        self._blocked.discard(remote_id)

    async def _stop_sink(self, remote_id: str) -> None:
        sink = self._sinks.pop(remote_id, None)
        if sink is None:
            return
        try:
            await sink.stop()
        except Exception as e:
            logger.debug(f"[Audio] [{remote_id[:8]}] 싱크 종료 오류 무시: {e}")

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
