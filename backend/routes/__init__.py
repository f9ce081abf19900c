"""FastAPI 라우터 모듈.

app.py에서 분리된 API 엔드포인트들을 제공합니다.
"""

from .health import router as health_router
from .rooms import router as rooms_router, init_managers as init_room_managers
from .deps import verify_auth_header

__all__ = [
    "health_router",
    "rooms_router",
    "init_room_managers",
    "verify_auth_header",
]
