"""취소 가능한 asyncio 디바운스 유틸리티."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """마지막 호출만 지연 후 실행합니다.

    새 입력이 들어오면 아직 대기 중인 실행은 취소됩니다. 역할이 잠깐씩
    흔들리는 동안 마이크를 반복해서 켜고 끄지 않기 위해 사용합니다.

    Attributes:
        delay (float): 실행 전 대기 시간 (초)
        name (str): 로그용 이름

    Note:
        - 지연이 끝나 이미 실행 중인 호출은 취소하지 않음 (장치 획득 도중 중단 방지)

    Examples:
        >>> debouncer = Debouncer(0.15, name="mic")
        >>> debouncer.call(evaluate_mic)
        >>> debouncer.call(evaluate_mic)  # 앞의 호출은 취소됨
    """

    def __init__(self, delay: float, name: str = "debounce"):
        self.delay = delay
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._running: Optional[asyncio.Task] = None
        self._waiting = False

    @property
    def pending(self) -> bool:
        return self._waiting and self._task is not None and not self._task.done()

    def call(self, fn: Callable[[], Awaitable[None]]) -> None:
        """대기 중인 실행을 취소하고 ``fn``을 다시 예약합니다."""
        self.cancel()
        self._waiting = True
        self._task = asyncio.create_task(self._run(fn))

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None
        self._waiting = False

    async def wait(self) -> None:
        """예약되었거나 실행 중인 호출이 끝날 때까지 기다립니다."""
        for task in (self._task, self._running):
            if task is not None and not task.done():
                await asyncio.gather(task, return_exceptions=True)

    async def _run(self, fn: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            logger.debug(f"[Debounce] {self.name} 취소됨 (새 입력)")
            return

        self._waiting = False
        self._running = asyncio.current_task()
        try:
            await fn()
        except Exception as e:
            logger.error(f"[Debounce] {self.name} 실행 오류: {e}", exc_info=True)
