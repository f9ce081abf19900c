"""테스트 공용 fake 및 fixture.

실제 Redis/PostgreSQL/오디오 장치 없이 세션 흐름을 검증하기 위한
인메모리 채널 허브, 피어 링크, 레포지토리, 마이크/싱크 대역을 제공합니다.
"""

import asyncio
from typing import Dict, List, Optional

import pytest
from aiortc.mediastreams import AudioStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from audio_room.room import AudioRoomSession, RoomConfig
from audio_room.webrtc import LocalAudioStream

POST_ID = "post-1"
FAST_DEBOUNCE = 0.01
FAST_REBUILD = 0.02


# ============================================================
# 실시간 채널
# ============================================================

class InMemoryHub:
    """같은 룸 토픽을 공유하는 채널들 사이의 presence/broadcast 전달."""

    def __init__(self):
        self.presence: Dict[str, List[dict]] = {}
        self.channels: List["FakeChannel"] = []
        self.broadcasts: List[dict] = []

    async def sync_all(self):
        for channel in list(self.channels):
            await channel.deliver_sync()

    async def broadcast(self, sender: "FakeChannel", event: str, payload: dict):
        self.broadcasts.append({"event": event, "payload": payload})
        for channel in list(self.channels):
            await channel.deliver_broadcast(event, payload)


class FakeChannel:
    """RealtimeChannel과 같은 인터페이스의 인메모리 채널."""

    def __init__(self, hub: InMemoryHub, key: str, fail_subscribe: bool = False):
        self.hub = hub
        self.key = key
        self.fail_subscribe = fail_subscribe
        self.subscribed = False
        self.unsubscribe_calls = 0
        self.tracked_meta: Optional[dict] = None
        self._sync_handlers = []
        self._broadcast_handlers: Dict[str, list] = {}

    def on_presence_sync(self, handler):
        self._sync_handlers.append(handler)

    def on_broadcast(self, event, handler):
        self._broadcast_handlers.setdefault(event, []).append(handler)

    def presence_state(self):
        return {key: list(metas) for key, metas in self.hub.presence.items()}

    async def subscribe(self, on_status=None):
        if self.fail_subscribe:
            return False
        self.subscribed = True
        self.hub.channels.append(self)
        await self.deliver_sync()
        return True

    async def unsubscribe(self):
        self.unsubscribe_calls += 1
        if self.tracked_meta is not None:
            await self.untrack()
        self.subscribed = False
        if self in self.hub.channels:
            self.hub.channels.remove(self)

    async def track(self, meta):
        self.tracked_meta = dict(meta)
        self.hub.presence[self.key] = [dict(meta)]
        await self.hub.sync_all()
        return True

    async def untrack(self):
        self.tracked_meta = None
        self.hub.presence.pop(self.key, None)
        await self.hub.sync_all()
        return True

    async def send(self, event, payload):
        await self.hub.broadcast(self, event, payload)
        return True

    async def deliver_sync(self):
        for handler in list(self._sync_handlers):
            result = handler(self.presence_state())
            if asyncio.iscoroutine(result):
                await result

    async def deliver_broadcast(self, event, payload):
        for handler in list(self._broadcast_handlers.get(event, [])):
            result = handler(payload)
            if asyncio.iscoroutine(result):
                await result


# ============================================================
# 피어 링크
# ============================================================

class FakePeerLink(AsyncIOEventEmitter):
    """PeerLink 대역. 협상 없이 호출만 기록합니다."""

    def __init__(self, remote_id: str, initiator: bool):
        super().__init__()
        self.remote_id = remote_id
        self.initiator = initiator
        self.started = False
        self.closed = False
        self.received: List[dict] = []
        self.tracks = []

    async def start(self):
        self.started = True

    async def signal(self, data):
        self.received.append(data)

    def add_track(self, track):
        self.tracks.append(track)

    def remove_tracks(self):
        self.tracks.clear()

    async def destroy(self):
        self.closed = True
        self.emit("close")
        self.remove_all_listeners()

    def report(self, state: str):
        """transport 상태 변경을 흉내 냅니다."""
        self.emit("statechange", state)


class LinkFactory:
    def __init__(self):
        self.created: List[FakePeerLink] = []

    def __call__(self, remote_id, initiator):
        link = FakePeerLink(remote_id, initiator)
        self.created.append(link)
        return link

    def for_remote(self, remote_id) -> List[FakePeerLink]:
        return [link for link in self.created if link.remote_id == remote_id]


# ============================================================
# 레포지토리
# ============================================================

class FakePostRepository:
    """posts 레코드 하나를 흉내 내는 레포지토리."""

    def __init__(self, owner_id: Optional[str], active: bool = False):
        self.owner_id = owner_id
        self.active = active
        self.writes: List[bool] = []
        self.fail_writes = False

    async def get_post_owner(self, post_id):
        return self.owner_id

    async def is_audio_room_active(self, post_id):
        return self.active

    async def set_audio_room_active(self, post_id, owner_id, active):
        if self.fail_writes or owner_id != self.owner_id:
            return False
        self.writes.append(active)
        self.active = active
        return True

    async def list_active_rooms(self, community_id=None):
        if not self.active:
            return []
        return [{"post_id": POST_ID, "owner_id": self.owner_id, "community_id": community_id}]


# ============================================================
# 미디어
# ============================================================

class MicrophoneFactory:
    """AudioStreamTrack 기반 마이크. 획득 지연/실패를 조절할 수 있습니다."""

    def __init__(self):
        self.opened: List[LocalAudioStream] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise PermissionError("microphone permission denied")
        stream = LocalAudioStream(AudioStreamTrack(), backend="test")
        self.opened.append(stream)
        return stream


class FakeSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.tracks = []
        self.started = False
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        if self.fail:
            raise RuntimeError("autoplay blocked")
        self.started = True

    async def stop(self):
        self.stopped = True


class SinkFactory:
    def __init__(self):
        self.sinks: List[FakeSink] = []
        self.fail = False

    def __call__(self):
        sink = FakeSink(fail=self.fail)
        self.sinks.append(sink)
        return sink


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def hub():
    return InMemoryHub()


@pytest.fixture
def link_factory():
    return LinkFactory()


@pytest.fixture
def mic_factory():
    return MicrophoneFactory()


@pytest.fixture
def sink_factory():
    return SinkFactory()


@pytest.fixture
def room_settings():
    return RoomConfig(OWNER_AUTO_SPEAK=False, ROLE_DEBOUNCE=FAST_DEBOUNCE, MAX_HOSTED_SESSIONS=0)


@pytest.fixture
async def make_session(hub, link_factory, mic_factory, sink_factory, room_settings):
    """같은 허브에 붙는 세션을 만드는 팩토리."""
    sessions = []

    def factory(participant_id, repository, **kwargs):
        session = AudioRoomSession(
            POST_ID,
            participant_id,
            channel=kwargs.pop("channel", None) or FakeChannel(hub, participant_id),
            repository=repository,
            link_factory=kwargs.pop("link_factory", link_factory),
            microphone_factory=kwargs.pop("microphone_factory", mic_factory),
            sink_factory=kwargs.pop("sink_factory", sink_factory),
            config=kwargs.pop("config", room_settings),
            rebuild_delay=kwargs.pop("rebuild_delay", FAST_REBUILD),
            **kwargs,
        )
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.leave()


async def settle(delay: float = FAST_DEBOUNCE * 5):
    """디바운스/재구성 타이머가 지나가도록 기다립니다."""
    await asyncio.sleep(delay)


class HostedSessionFactory:
    """SessionRegistry용 세션 팩토리 (인메모리 허브 사용)."""

    def __init__(self, hub: InMemoryHub, repository: "FakePostRepository", fail_subscribe: bool = False):
        self.hub = hub
        self.repository = repository
        self.fail_subscribe = fail_subscribe
        self.created: List[AudioRoomSession] = []

    def __call__(self, post_id, participant_id):
        session = AudioRoomSession(
            post_id,
            participant_id,
            channel=FakeChannel(self.hub, participant_id, fail_subscribe=self.fail_subscribe),
            repository=self.repository,
            link_factory=LinkFactory(),
            microphone_factory=MicrophoneFactory(),
            sink_factory=SinkFactory(),
            config=RoomConfig(OWNER_AUTO_SPEAK=False, ROLE_DEBOUNCE=FAST_DEBOUNCE, MAX_HOSTED_SESSIONS=0),
            rebuild_delay=FAST_REBUILD,
        )
        self.created.append(session)
        return session
