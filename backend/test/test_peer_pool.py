"""PeerConnectionPool 테스트.

실행:
    pytest backend/test/test_peer_pool.py
"""

import asyncio
import itertools
import logging
from unittest.mock import MagicMock

import pytest

from audio_room.shared import Role
from audio_room.webrtc import LinkState, PeerConnectionPool, is_initiator, should_connect

from conftest import FAST_REBUILD, LinkFactory


IDS = ["alice", "bob", "carol", "0f3a", "0f3b", "Zed", "zed"]


def make_pool(local_id="bob", **kwargs):
    factory = kwargs.pop("link_factory", LinkFactory())
    pool = PeerConnectionPool(
        local_id,
        link_factory=factory,
        rebuild_delay=kwargs.pop("rebuild_delay", FAST_REBUILD),
        max_rebuild_attempts=kwargs.pop("max_rebuild_attempts", 0),
        **kwargs,
    )
    return pool, factory


async def wait_rebuild():
    await asyncio.sleep(FAST_REBUILD * 4)


class TestLinkRules:
    def test_initiator_is_antisymmetric(self):
        for a, b in itertools.permutations(IDS, 2):
            assert is_initiator(a, b) != is_initiator(b, a)

    def test_initiator_uses_string_order(self):
        assert is_initiator("alice", "bob")
        assert not is_initiator("bob", "alice")

    @pytest.mark.parametrize(
        "local, remote, expected",
        [
            (Role.SPEAKER, Role.SPEAKER, True),
            (Role.SPEAKER, Role.LISTENER, True),
            (Role.LISTENER, Role.SPEAKER, True),
            (Role.LISTENER, Role.LISTENER, False),
        ],
    )
    def test_should_connect(self, local, remote, expected):
        assert should_connect(local, remote) is expected


class TestUpsertRemove:
    async def test_upsert_creates_one_link_per_remote(self):
        pool, factory = make_pool("bob")

        first = await pool.upsert("carol")
        second = await pool.upsert("carol")

        assert first is second
        assert len(factory.created) == 1
        assert first.initiator is True  # bob < carol
        assert first.started
        assert pool.state("carol") == LinkState.CONNECTING

    async def test_upsert_follows_initiator_rule_for_lower_remote(self):
        pool, _ = make_pool("bob")
        link = await pool.upsert("alice")
        assert link.initiator is False

    async def test_upsert_can_force_responder(self):
        pool, _ = make_pool("bob")
        link = await pool.upsert("carol", initiator=False)
        assert link.initiator is False

    async def test_upsert_rejects_self(self):
        pool, _ = make_pool("bob")
        with pytest.raises(ValueError):
            await pool.upsert("bob")

    async def test_remove_destroys_link_and_purges_stream(self):
        removed = []
        pool, _ = make_pool("bob", on_stream_removed=removed.append)
        link = await pool.upsert("carol")

        await pool.remove("carol")

        assert link.closed
        assert "carol" not in pool
        assert removed == ["carol"]
        assert pool.state("carol") == LinkState.NONE

    async def test_remove_unknown_is_noop(self):
        removed = []
        pool, _ = make_pool("bob", on_stream_removed=removed.append)
        await pool.remove("nobody")
        assert removed == []

    async def test_destroy_all_clears_pool(self):
        pool, factory = make_pool("bob")
        await pool.upsert("alice")
        await pool.upsert("carol")
        factory.created[0].report("failed")

        await pool.destroy_all()
        await wait_rebuild()

        assert len(pool) == 0
        assert all(link.closed for link in factory.created)
        assert len(factory.created) == 2  # 예약된 재구성도 취소됨


class TestTransportEvents:
    async def test_connected_updates_state(self):
        pool, _ = make_pool("bob")
        link = await pool.upsert("carol")

        link.report("connected")

        assert pool.state("carol") == LinkState.CONNECTED
        assert pool.states() == {"carol": "connected"}

    async def test_failed_link_is_replaced_once_after_delay(self):
        removed = []
        pool, factory = make_pool("bob", on_stream_removed=removed.append)
        first_link = await pool.upsert("carol")
        first_link.report("connected")

        first_link.report("failed")
        assert pool.state("carol") == LinkState.FAILED
        assert pool.get("carol") is first_link  # 지연 전에는 그대로

        await wait_rebuild()

        replacement = pool.get("carol")
        assert replacement is not first_link
        assert first_link.closed
        assert len(factory.for_remote("carol")) == 2
        assert replacement.initiator is True
        assert replacement.started
        assert removed == ["carol"]
        assert pool.state("carol") == LinkState.CONNECTING

    async def test_duplicate_failure_reports_are_coalesced(self):
        pool, factory = make_pool("bob")
        link = await pool.upsert("carol")

        link.report("disconnected")
        link.emit("icestatechange", "disconnected")
        link.report("failed")
        link.emit("icestatechange", "failed")
        await wait_rebuild()

        assert len(factory.for_remote("carol")) == 2

    async def test_recovered_link_is_not_rebuilt(self):
        pool, factory = make_pool("bob")
        link = await pool.upsert("carol")
        link.report("connected")

        link.report("disconnected")
        link.report("connected")
        await wait_rebuild()

        assert pool.get("carol") is link
        assert len(factory.created) == 1

    async def test_events_from_replaced_link_are_ignored(self):
        signals = []
        pool, factory = make_pool("bob", on_signal=lambda rid, data: signals.append(data))
        old = await pool.upsert("carol")
        old.report("failed")
        await wait_rebuild()

        old.emit("signal", {"type": "offer", "sdp": "stale"})
        old.report("failed")
        await wait_rebuild()

        assert signals == []
        assert len(factory.created) == 2

    async def test_rebuild_cap_abandons_link(self):
        abandoned = []
        pool, factory = make_pool(
            "bob", max_rebuild_attempts=1, on_link_abandoned=abandoned.append
        )
        link = await pool.upsert("carol")

        link.report("failed")
        await wait_rebuild()
        pool.get("carol").report("failed")
        await wait_rebuild()

        assert "carol" not in pool
        assert abandoned == ["carol"]
        assert len(factory.created) == 2

    async def test_rebuild_counter_resets_on_connect(self):
        pool, factory = make_pool("bob", max_rebuild_attempts=1)
        link = await pool.upsert("carol")

        link.report("failed")
        await wait_rebuild()
        second = pool.get("carol")
        second.report("connected")
        second.report("failed")
        await wait_rebuild()

        assert "carol" in pool
        assert len(factory.created) == 3

    async def test_stream_callback_receives_remote_track(self):
        on_stream = MagicMock()
        pool, _ = make_pool("bob", on_stream=on_stream)
        link = await pool.upsert("carol")
        track = object()

        link.emit("stream", track)

        on_stream.assert_called_once_with("carol", track)

    async def test_async_callback_errors_are_logged(self, caplog):
        async def broken_signal(remote_id, data):
            raise RuntimeError("publish failed")

        pool, _ = make_pool("bob", on_signal=broken_signal)
        link = await pool.upsert("carol")

        with caplog.at_level(logging.ERROR, logger="audio_room.webrtc.peer_pool"):
            link.emit("signal", {"type": "offer"})
            await asyncio.sleep(0.01)

        assert "publish failed" in caplog.text
        assert pool._tasks == set()


class TestLocalSource:
    async def test_local_source_attached_to_existing_and_new_links(self):
        pool, _ = make_pool("bob")
        first = await pool.upsert("alice")
        subscriptions = iter(range(100))

        pool.attach_local_source(lambda: f"track-{next(subscriptions)}")
        second = await pool.upsert("carol")

        assert first.tracks == ["track-0"]
        assert second.tracks == ["track-1"]

    async def test_detach_local_source_removes_tracks(self):
        pool, _ = make_pool("bob")
        link = await pool.upsert("carol")
        pool.attach_local_source(lambda: "track")

        pool.detach_local_source()
        later = await pool.upsert("dave")

        assert link.tracks == []
        assert later.tracks == []
        assert not pool.has_local_source

    async def test_rebuilt_link_gets_local_source(self):
        pool, _ = make_pool("bob")
        link = await pool.upsert("carol")
        pool.attach_local_source(lambda: "track")

        link.report("failed")
        await wait_rebuild()

        assert pool.get("carol").tracks == ["track"]
