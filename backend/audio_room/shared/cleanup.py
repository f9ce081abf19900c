"""Best-effort 정리 시퀀스.

각 단계는 앞 단계의 실패와 관계없이 실행되며, 실패는 기록만 하고
호출자에게 전파하지 않습니다.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

logger = logging.getLogger(__name__)

CleanupStep = Tuple[str, Callable[[], Any]]


@dataclass
class CleanupReport:
    """정리 결과.

    Attributes:
        completed (List[str]): 성공한 단계 이름
        failures (Dict[str, str]): 실패한 단계 이름 → 오류 메시지
    """

    completed: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> dict:
        return {"ok": self.ok, "completed": list(self.completed), "failures": dict(self.failures)}


async def run_best_effort(steps: Sequence[CleanupStep], label: str = "cleanup") -> CleanupReport:
    """정리 단계를 순서대로 실행합니다.

    Args:
        steps: ``(이름, 호출 가능 객체)`` 목록. 코루틴 함수도 허용
        label: 로그용 이름

    Returns:
        CleanupReport: 단계별 결과
    """
    report = CleanupReport()
    for name, step in steps:
        try:
            result = step()
            if inspect.isawaitable(result):
                await result
            report.completed.append(name)
        except Exception as e:
            report.failures[name] = f"{type(e).__name__}: {e}"
            logger.warning(f"[Cleanup] {label}: '{name}' 단계 실패 (계속 진행): {e}")

    if report.failures:
        logger.info(f"[Cleanup] {label} 완료 (실패 {len(report.failures)}건)")
    return report
