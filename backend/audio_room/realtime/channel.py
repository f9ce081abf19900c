"""Redis 기반 룸 실시간 채널.

룸 하나당 pub/sub 토픽 하나(``audio-room-{post_id}``)와 presence 해시 하나
(``audio-room-{post_id}:presence``)를 사용합니다.

Message 형식 (토픽으로 publish되는 JSON):
    - ``{"type": "presence", "event": "sync", "key": str}``
      presence 해시가 바뀌었으니 다시 읽으라는 알림
    - ``{"type": "broadcast", "event": str, "payload": dict}``
      signal 등 애플리케이션 메시지

Presence 해시:
    field = presence key (참가자 ID), value = ``[meta, ...]`` JSON.
    각 meta에는 ``online_at`` (epoch 초)이 포함되며, ``PRESENCE_TTL``보다
    오래된 항목은 읽을 때 제외됩니다.

Examples:
    >>> channel = RealtimeChannel(redis_client, "post-1", key="alice")
    >>> channel.on_broadcast("signal", handle_signal)
    >>> channel.on_presence_sync(handle_sync)
    >>> await channel.subscribe(lambda status: print(status))
    >>> await channel.track({"role": "listener"})
    >>> await channel.send("signal", {"from": "alice", "data": {...}})
    >>> await channel.unsubscribe()
"""

import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .config import channel_config

logger = logging.getLogger(__name__)

PresenceState = Dict[str, List[dict]]

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


def channel_name(post_id: str) -> str:
    """룸 토픽 이름."""
    return f"{channel_config.TOPIC_PREFIX}-{post_id}"


def presence_key(post_id: str) -> str:
    """룸 presence 해시 키."""
    return f"{channel_name(post_id)}:presence"


async def read_presence(redis_client, post_id: str, ttl: Optional[float] = None) -> PresenceState:
    """presence 해시를 읽어 만료되지 않은 항목만 반환합니다.

    Args:
        redis_client: ``redis.asyncio`` 클라이언트 (decode_responses=True)
        post_id (str): 룸 ID
        ttl (Optional[float]): 만료 기준 (초). None이면 설정값

    Returns:
        PresenceState: ``{key: [meta, ...]}``
    """
    ttl = channel_config.PRESENCE_TTL if ttl is None else ttl
    raw = await redis_client.hgetall(presence_key(post_id))
    now = time.time()

    state: PresenceState = {}
    for key, value in raw.items():
        try:
            metas = json.loads(value)
        except (TypeError, ValueError):
            logger.warning(f"[Presence] 잘못된 presence 항목 무시: {key}")
            continue
        if isinstance(metas, dict):
            metas = [metas]
        if not isinstance(metas, list):
            continue
        fresh = [meta for meta in metas if _is_fresh(meta, now, ttl)]
        if fresh:
            state[key] = fresh
    return state


def _is_fresh(meta: Any, now: float, ttl: float) -> bool:
    if not isinstance(meta, dict):
        return False
    try:
        online_at = float(meta.get("online_at", 0))
    except (TypeError, ValueError):
        return False
    return now - online_at <= ttl


class RealtimeChannel:
    """룸 토픽에 대한 broadcast + presence 채널.

    Attributes:
        post_id (str): 룸 ID
        key (str): 로컬 presence key (참가자 ID)
        topic (str): pub/sub 토픽 이름
        status (Optional[str]): 마지막 구독 상태
    """

    def __init__(self, redis_client, post_id: str, key: str):
        self.redis = redis_client
        self.post_id = post_id
        self.key = key
        self.topic = channel_name(post_id)
        self.presence_key = presence_key(post_id)
        self.status: Optional[str] = None

        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._tracked_meta: Optional[dict] = None
        self._presence: PresenceState = {}
        self._sync_handlers: List[Callable[[PresenceState], Any]] = []
        self._broadcast_handlers: Dict[str, List[Callable[[dict], Any]]] = {}

    # ------------------------------------------------------------------
    # 핸들러 등록
    # ------------------------------------------------------------------

    def on_presence_sync(self, handler: Callable[[PresenceState], Any]) -> None:
        self._sync_handlers.append(handler)

    def on_broadcast(self, event: str, handler: Callable[[dict], Any]) -> None:
        self._broadcast_handlers.setdefault(event, []).append(handler)

    def presence_state(self) -> PresenceState:
        """마지막으로 동기화된 presence 상태."""
        return {key: list(metas) for key, metas in self._presence.items()}

    @property
    def tracked(self) -> bool:
        return self._tracked_meta is not None

    # ------------------------------------------------------------------
    # 구독
    # ------------------------------------------------------------------

    async def subscribe(self, on_status: Optional[Callable[[str], Any]] = None) -> bool:
        """토픽을 구독하고 현재 presence를 읽어옵니다.

        Returns:
            bool: 구독 성공 여부
        """
        try:
            self._pubsub = self.redis.pubsub()
            await self._pubsub.subscribe(self.topic)
            self._listener_task = asyncio.create_task(self._listen())
            await self._sync_presence()
        except Exception as e:
            logger.error(f"[Realtime] 채널 구독 실패 ({self.topic}): {e}")
            self.status = CHANNEL_ERROR
            await _maybe_await(on_status, CHANNEL_ERROR)
            return False

        self.status = SUBSCRIBED
        logger.info(f"[Realtime] 채널 구독: {self.topic} (key={self.key[:8]})")
        await _maybe_await(on_status, SUBSCRIBED)
        return True

    async def unsubscribe(self) -> None:
        """presence를 해제하고 리스너/heartbeat를 멈춘 뒤 pub/sub을 닫습니다."""
        try:
            if self.tracked:
                await self.untrack()
        finally:
            await self._stop_heartbeat()
            if self._listener_task is not None:
                self._listener_task.cancel()
                await asyncio.gather(self._listener_task, return_exceptions=True)
                self._listener_task = None
            if self._pubsub is not None:
                pubsub, self._pubsub = self._pubsub, None
                try:
                    await pubsub.unsubscribe(self.topic)
                finally:
                    await pubsub.close()
            self.status = CLOSED
            logger.info(f"[Realtime] 채널 구독 해제: {self.topic}")

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def track(self, meta: dict) -> bool:
        """로컬 presence를 등록(갱신)하고 다른 구독자에게 알립니다."""
        self._tracked_meta = dict(meta)
        try:
            await self._write_presence()
            await self._publish({"type": "presence", "event": "sync", "key": self.key})
        except Exception as e:
            logger.error(f"[Presence] track 실패 ({self.key[:8]}): {e}")
            return False

        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
        return True

    async def untrack(self) -> bool:
        self._tracked_meta = None
        await self._stop_heartbeat()
        try:
            await self.redis.hdel(self.presence_key, self.key)
            await self._publish({"type": "presence", "event": "sync", "key": self.key})
        except Exception as e:
            logger.error(f"[Presence] untrack 실패 ({self.key[:8]}): {e}")
            return False
        return True

    async def _write_presence(self) -> None:
        entry = dict(self._tracked_meta or {})
        entry["online_at"] = time.time()
        await self.redis.hset(self.presence_key, self.key, json.dumps([entry]))

    async def _heartbeat(self) -> None:
        while self._tracked_meta is not None:
            await asyncio.sleep(channel_config.PRESENCE_HEARTBEAT)
            if self._tracked_meta is None:
                break
            try:
                await self._write_presence()
                # 만료된 참가자를 반영
                await self._sync_presence(only_if_changed=True)
            except Exception as e:
                logger.warning(f"[Presence] heartbeat 실패 ({self.key[:8]}): {e}")

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _sync_presence(self, only_if_changed: bool = False) -> None:
        state = await read_presence(self.redis, self.post_id)
        if only_if_changed and set(state) == set(self._presence):
            self._presence = state
            return
        self._presence = state
        for handler in list(self._sync_handlers):
            try:
                await _maybe_await(handler, self.presence_state())
            except Exception as e:
                logger.error(f"[Presence] sync 핸들러 오류: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def send(self, event: str, payload: dict) -> bool:
        """broadcast 메시지를 publish합니다. 전달 보장은 없습니다."""
        try:
            await self._publish({"type": "broadcast", "event": event, "payload": payload})
            return True
        except Exception as e:
            logger.warning(f"[Realtime] broadcast 실패 ({event}): {e}")
            return False

    async def _publish(self, message: dict) -> int:
        return await self.redis.publish(self.topic, json.dumps(message))

    async def _listen(self) -> None:
        try:
            while True:
                raw = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if raw is None:
                    continue
                await self.handle_message(raw)
        except asyncio.CancelledError:
            logger.debug(f"[Realtime] 리스너 종료: {self.topic}")
        except Exception as e:
            logger.error(f"[Realtime] 리스너 오류 ({self.topic}): {e}", exc_info=True)
            self.status = CHANNEL_ERROR

    async def handle_message(self, raw: dict) -> None:
        """pub/sub 메시지 하나를 처리합니다."""
        if raw.get("type") != "message":
            return
        data = raw.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            message = json.loads(data)
        except (TypeError, ValueError):
            logger.warning(f"[Realtime] 파싱할 수 없는 메시지 무시: {str(data)[:80]}")
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get("type")
        if msg_type == "presence":
            try:
                await self._sync_presence()
            except Exception as e:
                logger.warning(f"[Presence] presence 동기화 실패 ({self.topic}): {e}")
        elif msg_type == "broadcast":
            event = message.get("event")
            payload = message.get("payload")
            for handler in list(self._broadcast_handlers.get(event, [])):
                try:
                    await _maybe_await(handler, payload)
                except Exception as e:
                    logger.error(f"[Realtime] '{event}' 핸들러 오류: {e}", exc_info=True)


async def _maybe_await(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
