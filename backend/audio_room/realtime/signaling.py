"""룸 토픽을 통한 WebRTC 협상 메시지 중계.

모든 참가자가 같은 토픽의 ``signal`` 이벤트를 받으므로, 자신이 보낸 메시지는
여기서 걸러냅니다. 전송은 fire-and-forget이며 ack/재시도가 없습니다.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..shared import SignalEnvelope

logger = logging.getLogger(__name__)

SIGNAL_EVENT = "signal"


class SignalingRelay:
    """``{from, data}`` 봉투로 signal을 주고받습니다.

    Attributes:
        channel: ``send`` / ``on_broadcast`` 를 제공하는 실시간 채널
        local_id (str): 로컬 참가자 ID
        on_signal (Optional[Callable[[str, dict], Any]]): 수신 signal 처리 (from, data)
    """

    def __init__(
        self,
        channel,
        local_id: str,
        on_signal: Optional[Callable[[str, dict], Any]] = None,
    ):
        self.channel = channel
        self.local_id = local_id
        self.on_signal = on_signal
        # 호출 순서대로 publish (renegotiate 뒤에 offer가 앞지르지 않도록)
        self._send_lock = asyncio.Lock()

    def bind(self) -> None:
        self.channel.on_broadcast(SIGNAL_EVENT, self.handle)

    async def send(self, data: dict, to: Optional[str] = None) -> bool:
        envelope = SignalEnvelope(sender=self.local_id, recipient=to, data=data)
        async with self._send_lock:
            ok = await self.channel.send(SIGNAL_EVENT, envelope.to_wire())
        if not ok:
            logger.warning(f"[Signal] 전송 실패 (type={data.get('type')})")
        return ok

    async def handle(self, payload: Any) -> None:
        """수신 payload를 검증하고 세션으로 넘깁니다."""
        try:
            envelope = SignalEnvelope.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[Signal] 잘못된 signal 무시: {e.error_count()}개 오류")
            return

        if envelope.sender == self.local_id or not envelope.addressed_to(self.local_id):
            return

        logger.debug(
            f"[Signal] {envelope.sender[:8]} → {self.local_id[:8]} "
            f"type={envelope.data.get('type') or list(envelope.data.keys())}"
        )
        if self.on_signal is None:
            return
        result = self.on_signal(envelope.sender, envelope.data)
        if inspect.isawaitable(result):
            await result
