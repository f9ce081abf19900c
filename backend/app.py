"""FastAPI Audio Room Session Server.

커뮤니티 게시글에 딸린 오디오 룸의 참가자 세션을 서버에서 호스팅합니다.
브라우저 참가자와 같은 Redis 룸 채널(presence + signal broadcast)을 사용하며,
aiortc로 다른 참가자와 직접 피어 연결을 맺습니다.

주요 기능:
    - 룸 상태 조회 (owner, audio_room_active 플래그, presence)
    - 호스팅 세션 입장/퇴장, speaker/listener 전환, 룸 종료
    - 브라우저 클라이언트용 ICE 서버 목록 제공

Architecture:
    - Mesh 패턴: speaker가 있는 쌍만 직접 연결
    - SessionRegistry: (post_id, participant_id) 별 AudioRoomSession 보관
    - Redis: 룸 토픽 pub/sub + presence 해시
    - PostgreSQL: posts.audio_room_active 플래그
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from audio_room.database import get_db_manager, get_redis_manager
from audio_room.room import SessionRegistry
from audio_room.webrtc import ice_config
from routes import health_router, rooms_router, init_room_managers, verify_auth_header

# config/.env 환경변수 로드
load_dotenv(Path(__file__).parent / "config" / ".env")


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))

CORS_ORIGIN_REGEX = os.getenv("CORS_ORIGIN_REGEX") or (
    r"^https?://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$|^https://.*\.trycloudflare\.com$"
)


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    from datetime import timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in Path(log_dir).glob("server_*.log"):
        try:
            file_date = datetime.strptime(log_file.stem.replace("server_", ""), "%Y%m%d")
            if file_date < cutoff_date:
                log_file.unlink()
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


# 글로벌 매니저 인스턴스
session_registry = SessionRegistry()
db_manager = get_db_manager()
redis_manager = get_redis_manager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """서버 시작 시 DB/Redis를 연결하고, 종료 시 호스팅 세션을 모두 정리합니다.

    Note:
        - DB 없이도 실행되지만 owner 조회/플래그 쓰기는 건너뜀
        - 종료 시 세션 정리 → Redis 종료 → DB 종료 순서
          (owner 세션의 active=false 쓰기가 DB 종료 전에 끝나야 함)
    """
    logger.info("오디오 룸 세션 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    if await db_manager.initialize():
        logger.info("데이터베이스 연결 완료")
    else:
        logger.warning("데이터베이스 사용 불가, 룸 플래그 없이 실행")

    if await redis_manager.initialize():
        logger.info("Redis 연결 완료")
    else:
        logger.warning("Redis 사용 불가, 세션 호스팅 비활성화")

    yield

    logger.info("서버 종료 중...")

    reports = await session_registry.shutdown()
    failed = [key for key, report in reports.items() if not report.ok]
    if failed:
        logger.warning(f"세션 정리 중 실패한 단계가 있는 세션: {failed}")

    if redis_manager.is_initialized:
        await redis_manager.close()
        logger.info("Redis 연결 종료됨")

    if db_manager.is_initialized:
        await db_manager.close()
        logger.info("데이터베이스 연결 종료됨")


app = FastAPI(title="Audio Room Session Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(rooms_router)

# 룸 라우터에 레지스트리 전달
init_room_managers(session_registry)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트."""
    return {"status": "ok", "service": "Audio Room Session Server"}


@app.get("/api/turn-credentials")
async def get_turn_credentials(_: bool = Depends(verify_auth_header)):
    """브라우저 클라이언트용 ICE 서버 목록을 제공합니다.

    TURN credentials는 Backend 환경변수에서만 관리합니다.

    Returns:
        list: ICE servers 배열 (STUN + 설정된 경우 TURN)

    Examples:
        >>> await get_turn_credentials()
        [{"urls": "stun:stun.l.google.com:19302"},
         {"urls": "turn:turn.example.com:3478", "username": "u", "credential": "p"}]
    """
    servers = ice_config.as_dicts()
    logger.info(f"ICE 서버 제공: {'STUN + TURN' if ice_config.has_turn_server else 'STUN만'}")
    return servers


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
