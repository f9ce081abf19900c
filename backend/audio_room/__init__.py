"""오디오 룸 세션 패키지.

Subpackages:
    shared: DTO, 디바운스, best-effort 정리
    realtime: Redis 채널, presence, signal 중계
    webrtc: 피어 링크/풀, 마이크 및 원격 오디오
    room: 역할 상태 머신, 세션, 레지스트리
    database: PostgreSQL/Redis 연결, 게시글 레포지토리
"""
