"""단일 원격 참가자와의 WebRTC 피어 링크.

aiortc의 RTCPeerConnection을 "signal in / signal out" 형태의 객체로 감쌉니다.
협상 메시지는 불투명한 dict로 밖으로 내보내고(``signal`` 이벤트),
원격에서 받은 메시지는 ``signal()``로 주입합니다.

Signal 메시지 형식:
    - ``{"type": "offer" | "answer", "sdp": str}``
    - ``{"type": "candidate", "candidate": {"candidate", "sdpMid", "sdpMLineIndex"}}``
      (trickle ICE를 쓰는 브라우저 피어용. aiortc는 후보를 SDP에 모두 포함)
    - ``{"type": "renegotiate"}`` (responder가 initiator에게 재협상 요청)

Events:
    signal(data): 원격으로 보낼 협상 메시지
    connect(): 연결 성립 (최초 1회)
    statechange(state): connectionState 변경
    icestatechange(state): iceConnectionState 변경
    stream(track): 원격 오디오 트랙 수신
    error(exc): 협상 오류
    close(): 링크 종료
"""
import asyncio
import logging
from typing import List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .config import ice_config

logger = logging.getLogger(__name__)


class PeerLink(AsyncIOEventEmitter):
    """원격 참가자 한 명과의 오디오 피어 연결.

    Attributes:
        remote_id (str): 원격 참가자 ID
        initiator (bool): offer를 먼저 만드는 쪽인지 여부
        pc (RTCPeerConnection): 내부 aiortc 피어 연결
        closed (bool): destroy() 호출 여부

    Examples:
        >>> link = PeerLink("remote-b", initiator=True)
        >>> link.on("signal", lambda data: relay_send(data))
        >>> await link.start()            # offer 생성 → signal 이벤트
        >>> await link.signal(answer)     # 원격 answer 적용
        >>> await link.destroy()
    """

    def __init__(
        self,
        remote_id: str,
        initiator: bool,
        configuration: Optional[RTCConfiguration] = None,
    ):
        super().__init__()
        self.remote_id = remote_id
        self.initiator = initiator
        self.closed = False
        self.pc = RTCPeerConnection(configuration=configuration or ice_config.rtc_configuration())

        self._started = False
        self._connected = False
        self._pending_negotiation = False
        self._negotiation_lock = asyncio.Lock()
        self._senders: List[RTCRtpSender] = []

        if initiator:
            # 트랙이 없어도 원격 오디오를 받을 수 있도록 m-line을 미리 연다
            self.pc.addTransceiver("audio", direction="sendrecv")

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self.pc.connectionState
            logger.info(f"[WebRTC] [{remote_id[:8]}] PC 상태: {state}")
            if state == "connected" and not self._connected:
                self._connected = True
                self.emit("connect")
            self.emit("statechange", state)

        @self.pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            state = self.pc.iceConnectionState
            logger.info(f"[WebRTC] [{remote_id[:8]}] ICE 상태: {state}")
            self.emit("icestatechange", state)

        @self.pc.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"[WebRTC] [{remote_id[:8]}] 원격 {track.kind} 트랙 수신")
            if track.kind == "audio":
                self.emit("stream", track)

            @track.on("ended")
            async def on_ended():
                logger.info(f"[WebRTC] [{remote_id[:8]}] 원격 {track.kind} 트랙 종료")

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        """협상을 시작합니다. initiator만 offer를 만들고 responder는 대기합니다."""
        self._started = True
        if self.initiator:
            await self._negotiate()

    async def signal(self, data: dict) -> None:
        """원격에서 받은 협상 메시지를 적용합니다.

        Args:
            data (dict): offer/answer/candidate/renegotiate 메시지

        Note:
            - 처리 중 오류는 ``error`` 이벤트로 알리고 예외를 전파하지 않음
            - destroy() 이후 도착한 메시지는 무시됨
        """
        if self.closed:
            logger.debug(f"[WebRTC] [{self.remote_id[:8]}] 종료된 링크로 signal 도착, 무시")
            return

        msg_type = data.get("type")
        try:
            if msg_type == "renegotiate" or data.get("renegotiate"):
                if self.initiator:
                    await self._negotiate()
                return

            if msg_type == "candidate" or "candidate" in data:
                await self._add_candidate(data.get("candidate") or {})
                return

            if msg_type in ("offer", "answer") and data.get("sdp"):
                await self._apply_description(RTCSessionDescription(sdp=data["sdp"], type=msg_type))
                return

            logger.warning(f"[WebRTC] [{self.remote_id[:8]}] 알 수 없는 signal: {list(data.keys())}")
        except Exception as e:
            logger.error(f"[WebRTC] [{self.remote_id[:8]}] signal 처리 실패 ({msg_type}): {e}")
            self._emit_error(e)

    def add_track(self, track: MediaStreamTrack) -> RTCRtpSender:
        """로컬 트랙을 링크에 추가하고 필요하면 재협상을 요청합니다."""
        sender = self.pc.addTrack(track)
        self._senders.append(sender)
        logger.info(f"[WebRTC] [{self.remote_id[:8]}] 로컬 {track.kind} 트랙 추가")
        if self._should_renegotiate():
            asyncio.ensure_future(self._request_negotiation())
        return sender

    def remove_tracks(self) -> None:
        """전송 중인 로컬 트랙을 모두 떼어냅니다. m-line은 유지됩니다."""
        for sender in self._senders:
            if sender.track is not None:
                sender.replaceTrack(None)
        self._senders.clear()

    async def destroy(self) -> None:
        """피어 연결을 닫습니다. 여러 번 호출해도 안전합니다."""
        if self.closed:
            return
        self.closed = True
        self._senders.clear()
        try:
            await self.pc.close()
        finally:
            self.emit("close")
            self.remove_all_listeners()
            logger.info(f"[WebRTC] [{self.remote_id[:8]}] 링크 종료")

    def _should_renegotiate(self) -> bool:
        if self.closed or not self._started:
            return False
        if self.initiator:
            return True
        # 아직 offer를 받지 않았다면 곧 만들 answer에 트랙이 포함된다
        return self.pc.remoteDescription is not None

    async def _request_negotiation(self) -> None:
        if self.initiator:
            await self._negotiate()
        else:
            logger.info(f"[WebRTC] [{self.remote_id[:8]}] initiator에게 재협상 요청")
            self.emit("signal", {"type": "renegotiate", "renegotiate": True})

    async def _negotiate(self) -> None:
        async with self._negotiation_lock:
            if self.closed:
                return
            if self.pc.signalingState != "stable":
                # answer를 받은 뒤 다시 offer
                self._pending_negotiation = True
                return
            try:
                offer = await self.pc.createOffer()
                await self.pc.setLocalDescription(offer)
            except Exception as e:
                logger.error(f"[WebRTC] [{self.remote_id[:8]}] offer 생성 실패: {e}")
                self._emit_error(e)
                return

            local = self.pc.localDescription
            logger.info(
                f"[WebRTC] [{self.remote_id[:8]}] offer 전송 "
                f"(후보수={local.sdp.count('a=candidate:')})"
            )
            self.emit("signal", {"type": local.type, "sdp": local.sdp})

    async def _apply_description(self, description: RTCSessionDescription) -> None:
        await self.pc.setRemoteDescription(description)
        logger.info(
            f"[WebRTC] [{self.remote_id[:8]}] remote {description.type} 적용 "
            f"(signaling={self.pc.signalingState})"
        )

        if description.type == "offer":
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
            local = self.pc.localDescription
            self.emit("signal", {"type": local.type, "sdp": local.sdp})
            return

        if self._pending_negotiation:
            self._pending_negotiation = False
            await self._negotiate()

    async def _add_candidate(self, candidate: dict) -> None:
        candidate_str = candidate.get("candidate", "")
        if not candidate_str:
            # end-of-candidates 표시
            return
        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str[10:]

        ice_candidate = candidate_from_sdp(candidate_str)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)
        logger.debug(f"[WebRTC] [{self.remote_id[:8]}] ICE candidate 추가")

    def _emit_error(self, error: Exception) -> None:
        if self.listeners("error"):
            self.emit("error", error)
