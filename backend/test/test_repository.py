"""PostRepository 테스트 (DB/Redis는 mock)."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from audio_room.database import PostRepository


def make_db(initialized=True):
    db = MagicMock()
    db.is_initialized = initialized
    db.fetchval = AsyncMock()
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    return db


def make_redis(initialized=True):
    redis_manager = MagicMock()
    redis_manager.is_initialized = initialized
    redis_manager.publish = AsyncMock(return_value=1)
    return redis_manager


class TestOwnerLookup:
    async def test_returns_owner_id(self):
        db = make_db()
        db.fetchval.return_value = "alice"
        repository = PostRepository(db, make_redis())

        assert await repository.get_post_owner("42") == "alice"
        assert db.fetchval.await_args.args[1] == "42"

    async def test_missing_post_or_db_error_returns_none(self):
        db = make_db()
        db.fetchval.return_value = None
        repository = PostRepository(db, make_redis())
        assert await repository.get_post_owner("42") is None

        db.fetchval.side_effect = ConnectionError("db down")
        assert await repository.get_post_owner("42") is None

    async def test_uninitialized_db_is_skipped(self):
        db = make_db(initialized=False)
        repository = PostRepository(db, make_redis())

        assert await repository.get_post_owner("42") is None
        assert await repository.is_audio_room_active("42") is False
        assert await repository.set_audio_room_active("42", "alice", True) is False
        assert await repository.list_active_rooms() == []
        db.fetchval.assert_not_awaited()
        db.execute.assert_not_awaited()


class TestActiveFlag:
    async def test_read_flag(self):
        db = make_db()
        db.fetchval.return_value = True
        repository = PostRepository(db, make_redis())
        assert await repository.is_audio_room_active("42") is True

    async def test_conditional_update_publishes_status(self):
        db = make_db()
        redis_manager = make_redis()
        repository = PostRepository(db, redis_manager)

        assert await repository.set_audio_room_active("42", "alice", True) is True

        query, *args = db.execute.await_args.args
        assert "user_id::text = $3" in query
        assert args == [True, "42", "alice"]

        channel, body = redis_manager.publish.await_args.args
        notice = json.loads(body)
        assert channel == "audio-room-status"
        assert notice["type"] == "room_status"
        assert notice["post_id"] == "42"
        assert notice["audio_room_active"] is True

    async def test_non_owner_update_changes_nothing(self):
        db = make_db()
        db.execute.return_value = "UPDATE 0"
        redis_manager = make_redis()
        repository = PostRepository(db, redis_manager)

        assert await repository.set_audio_room_active("42", "mallory", True) is False
        redis_manager.publish.assert_not_awaited()

    async def test_write_error_returns_false(self):
        db = make_db()
        db.execute.side_effect = ConnectionError("db down")
        repository = PostRepository(db, make_redis())
        assert await repository.set_audio_room_active("42", "alice", False) is False

    async def test_status_publish_failure_does_not_fail_write(self):
        redis_manager = make_redis()
        redis_manager.publish.side_effect = ConnectionError("redis down")
        repository = PostRepository(make_db(), redis_manager)
        assert await repository.set_audio_room_active("42", "alice", False) is True

    async def test_status_skipped_without_redis(self):
        redis_manager = make_redis(initialized=False)
        repository = PostRepository(make_db(), redis_manager)
        assert await repository.set_audio_room_active("42", "alice", True) is True
        redis_manager.publish.assert_not_awaited()


class TestActiveRooms:
    async def test_rows_are_serialized(self):
        db = make_db()
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        db.fetch.return_value = [
            {"post_id": "42", "owner_id": "alice", "community_id": "c1",
             "title": "Morning chat", "created_at": created},
        ]
        repository = PostRepository(db, make_redis())

        rooms = await repository.list_active_rooms("c1")

        assert rooms == [{
            "post_id": "42", "owner_id": "alice", "community_id": "c1",
            "title": "Morning chat", "created_at": created.isoformat(),
        }]
        query, community_id = db.fetch.await_args.args
        assert "community_id::text = $1" in query
        assert community_id == "c1"
