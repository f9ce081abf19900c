"""SessionRegistry 테스트."""

import pytest

from audio_room.room import SessionLimitError, SessionRegistry

from conftest import FakePostRepository, HostedSessionFactory, POST_ID


@pytest.fixture
async def registry(hub):
    factory = HostedSessionFactory(hub, FakePostRepository(owner_id="alice"))
    registry = SessionRegistry(session_factory=factory, max_sessions=0)
    yield registry
    await registry.shutdown()


async def test_join_registers_session(registry):
    session = await registry.join(POST_ID, "alice")

    assert session.joined
    assert registry.get(POST_ID, "alice") is session
    assert len(registry) == 1
    assert registry.get_room_list() == [
        {"post_id": POST_ID, "session_count": 1, "participants": ["alice"]}
    ]


async def test_join_twice_returns_existing(registry):
    first = await registry.join(POST_ID, "alice")
    second = await registry.join(POST_ID, "alice")

    assert first is second
    assert len(registry.session_factory.created) == 1


async def test_leave_removes_room_entry(registry):
    await registry.join(POST_ID, "alice")

    report = await registry.leave(POST_ID, "alice")

    assert report.ok
    assert registry.rooms == {}
    assert await registry.leave(POST_ID, "alice") is None


async def test_session_limit(hub):
    factory = HostedSessionFactory(hub, FakePostRepository(owner_id="alice"))
    registry = SessionRegistry(session_factory=factory, max_sessions=1)
    await registry.join(POST_ID, "alice")

    with pytest.raises(SessionLimitError):
        await registry.join(POST_ID, "bob")

    await registry.shutdown()


async def test_failed_join_is_discarded(hub):
    factory = HostedSessionFactory(hub, FakePostRepository(owner_id="alice"), fail_subscribe=True)
    registry = SessionRegistry(session_factory=factory, max_sessions=0)

    with pytest.raises(ConnectionError):
        await registry.join(POST_ID, "bob")

    assert len(registry) == 0
    assert factory.created[0].closed


async def test_shutdown_leaves_every_session(registry, hub):
    await registry.join(POST_ID, "alice")
    await registry.join(POST_ID, "bob")
    await registry.join("post-2", "carol")

    reports = await registry.shutdown()

    assert set(reports) == {f"{POST_ID}/alice", f"{POST_ID}/bob", "post-2/carol"}
    assert len(registry) == 0
    assert hub.presence == {}
