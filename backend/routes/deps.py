"""공유 의존성 모듈.

룸 라우터(``/api/rooms``: 룸 상태 조회, 세션 입장/퇴장, 역할 전환, 룸 종료)와
``/api/turn-credentials`` 를 보호하는 비밀번호 인증 의존성입니다.
``/api/health`` 는 인증 없이 열려 있습니다.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException

# 접근 비밀번호 (비어 있으면 인증 비활성화)
ACCESS_PASSWORD = os.getenv("ACCESS_PASSWORD", "")


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """``Authorization: Bearer <ACCESS_PASSWORD>`` 헤더를 검증합니다.

    Raises:
        HTTPException: 인증 실패 시 401
    """
    if not ACCESS_PASSWORD:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if parts[1] != ACCESS_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid password")
    return True
