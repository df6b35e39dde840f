from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from shared.errors import InvalidState, MalformedMessage
from shared.protocol import CallStatus, SignalAction

from .media import LocalMedia

logger = logging.getLogger(__name__)

CHAT_CHANNEL_LABEL = "chat"
SEEN_WINDOW = 256

DEFAULT_ICE_SERVERS: list[dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# aiortc connectionState -> client call status
_STATE_MAP = {
    "new": None,
    "connecting": CallStatus.CONNECTING,
    "connected": CallStatus.CONNECTED,
    "disconnected": CallStatus.DISCONNECTED,
    "failed": CallStatus.ERROR,
    "closed": CallStatus.ENDED,
}

SignalSender = Callable[[SignalAction, Dict[str, object]], Awaitable[Any]]
StatusCallback = Callable[[CallStatus], Awaitable[None] | None]
FatalCallback = Callable[[str], Awaitable[None] | None]
ChannelCallback = Callable[[Any], Awaitable[None] | None]
PeerConnectionFactory = Callable[[RTCConfiguration], Any]


def _parse_server_list(raw: Optional[str], variable: str) -> Optional[list[dict[str, Any]]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse %s: %s", variable, exc)
        return None
    if not isinstance(parsed, list) or not parsed:
        logger.warning("%s is not a non-empty JSON array; ignoring it", variable)
        return None
    return [entry for entry in parsed if isinstance(entry, dict) and entry.get("urls")]


def ice_server_config(env: Optional[Mapping[str, str]] = None) -> list[dict[str, Any]]:
    """ICE servers: ``LIVE_ICE_SERVERS`` replaces the STUN defaults, ``LIVE_TURN_SERVERS`` is appended."""

    env = os.environ if env is None else env
    servers = list(DEFAULT_ICE_SERVERS)
    custom = _parse_server_list(env.get("LIVE_ICE_SERVERS"), "LIVE_ICE_SERVERS")
    if custom:
        servers = custom
    turn = _parse_server_list(env.get("LIVE_TURN_SERVERS"), "LIVE_TURN_SERVERS")
    if turn:
        servers.extend(turn)
    return servers


def build_rtc_configuration(servers: Optional[list[dict[str, Any]]] = None) -> RTCConfiguration:
    entries = ice_server_config() if servers is None else servers
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(
                urls=entry["urls"],
                username=entry.get("username"),
                credential=entry.get("credential"),
            )
            for entry in entries
        ]
    )


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Peer connection callback %s failed", getattr(callback, "__name__", callback))


class PeerConnectionManager:
    """Owns the single peer connection of one session on this device.

    The client side makes the offer and opens the ``chat`` data channel; the
    reader side answers. Offers, answers and ICE candidates travel over the
    signaling channel through ``send_signal``.
    """

    def __init__(
        self,
        session_id: str,
        *,
        is_offerer: bool,
        send_signal: SignalSender,
        media: Optional[LocalMedia] = None,
        pc_factory: PeerConnectionFactory = RTCPeerConnection,
        configuration: Optional[RTCConfiguration] = None,
        on_status: Optional[StatusCallback] = None,
        on_fatal: Optional[FatalCallback] = None,
        on_data_channel: Optional[ChannelCallback] = None,
        on_remote_track: Optional[ChannelCallback] = None,
        on_media_state: Optional[Callable[[dict], Awaitable[None] | None]] = None,
    ) -> None:
        self._session_id = session_id
        self._is_offerer = is_offerer
        self._send_signal = send_signal
        self._media = media or LocalMedia()
        self._pc_factory = pc_factory
        self._configuration = configuration
        self._on_status = on_status
        self._on_fatal = on_fatal
        self._on_data_channel = on_data_channel
        self._on_remote_track = on_remote_track
        self._on_media_state = on_media_state
        self._pc: Any = None
        self._channel: Any = None
        self._senders: Dict[str, Any] = {}
        self._pending_candidates: list[Any] = []
        self._seen_order: Deque[str] = deque()
        self._seen: set[str] = set()
        self._video_enabled = self._media.video is not None
        self._audio_enabled = self._media.audio is not None
        self._status = CallStatus.IDLE
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def data_channel(self) -> Any:
        return self._channel

    @property
    def media_state(self) -> Dict[str, bool]:
        return {"video": self._video_enabled, "audio": self._audio_enabled}

    async def start(self) -> None:
        """Create the connection, attach local tracks and, as offerer, send the offer."""

        async with self._lock:
            if self._closed:
                raise InvalidState(f"Peer connection for {self._session_id} is closed")
            if self._pc is not None:
                return
            self._create_connection()
            await self._set_status(CallStatus.CONNECTING)
            if self._is_offerer:
                channel = self._pc.createDataChannel(CHAT_CHANNEL_LABEL, ordered=True)
                await self._adopt_channel(channel)
                await self._send_offer()

    async def handle_signal(self, action: SignalAction, payload: Dict[str, Any], *, message_id: Optional[str] = None) -> None:
        """Apply one relayed signaling payload; repeats and stale answers are ignored."""

        if message_id is not None and self._is_duplicate(message_id):
            logger.debug("Ignoring duplicate %s %s", action.value, message_id)
            return
        async with self._lock:
            if self._closed:
                logger.debug("Ignoring %s for closed peer connection %s", action.value, self._session_id)
                return
            if action == SignalAction.OFFER:
                await self._handle_offer(payload)
            elif action == SignalAction.ANSWER:
                await self._handle_answer(payload)
            elif action == SignalAction.ICE_CANDIDATE:
                await self._handle_candidate(payload)
            elif action == SignalAction.MEDIA_STATE:
                await _call(self._on_media_state, payload)
            else:
                logger.debug("Peer connection ignores %s", action.value)

    async def set_video_enabled(self, enabled: bool) -> None:
        await self._set_track_enabled("video", enabled)

    async def set_audio_enabled(self, enabled: bool) -> None:
        await self._set_track_enabled("audio", enabled)

    async def renegotiate(self) -> None:
        """Issue a fresh offer on the existing connection."""

        async with self._lock:
            if self._pc is None or self._closed:
                raise InvalidState(f"No open peer connection for {self._session_id}")
            if self._pc.signalingState != "stable":
                raise InvalidState(f"Cannot renegotiate while {self._pc.signalingState}")
            await self._send_offer()

    async def close(self) -> None:
        """Release the channel, the local devices and the connection; safe to repeat."""

        if self._closed:
            return
        self._closed = True
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception:
                logger.exception("Error closing data channel for %s", self._session_id)
        self._media.stop()
        pc, self._pc = self._pc, None
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                logger.exception("Error closing peer connection for %s", self._session_id)
        self._senders.clear()
        self._pending_candidates.clear()
        await self._set_status(CallStatus.ENDED)
        logger.info("Peer connection for %s closed", self._session_id)

    def _create_connection(self) -> None:
        configuration = self._configuration or build_rtc_configuration()
        pc = self._pc_factory(configuration)
        self._pc = pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            await self._handle_connection_state(pc.connectionState)

        @pc.on("datachannel")
        async def on_datachannel(channel) -> None:
            if channel.label != CHAT_CHANNEL_LABEL:
                logger.debug("Ignoring unexpected data channel %s", channel.label)
                return
            await self._adopt_channel(channel)

        @pc.on("track")
        async def on_track(track) -> None:
            logger.info("Remote %s track received for %s", track.kind, self._session_id)
            await _call(self._on_remote_track, track)

        for track in self._media.tracks:
            self._senders[track.kind] = pc.addTrack(track)

    async def _adopt_channel(self, channel: Any) -> None:
        self._channel = channel
        await _call(self._on_data_channel, channel)

    async def _send_offer(self) -> None:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        description = self._pc.localDescription
        await self._send_signal(SignalAction.OFFER, {"sdp": description.sdp, "type": description.type})

    async def _handle_offer(self, payload: Dict[str, Any]) -> None:
        sdp = payload.get("sdp")
        if not sdp:
            raise MalformedMessage(f"Offer for {self._session_id} carries no SDP")
        if self._pc is None:
            self._create_connection()
            await self._set_status(CallStatus.CONNECTING)
        remote = self._pc.remoteDescription
        if remote is not None and remote.type == "offer" and remote.sdp == sdp:
            logger.debug("Ignoring repeated offer for %s", self._session_id)
            return
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        await self._flush_candidates()
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        description = self._pc.localDescription
        await self._send_signal(SignalAction.ANSWER, {"sdp": description.sdp, "type": description.type})

    async def _handle_answer(self, payload: Dict[str, Any]) -> None:
        if self._pc is None or self._pc.signalingState != "have-local-offer":
            state = self._pc.signalingState if self._pc is not None else "no-connection"
            logger.info("Ignoring answer for %s in state %s", self._session_id, state)
            return
        sdp = payload.get("sdp")
        if not sdp:
            raise MalformedMessage(f"Answer for {self._session_id} carries no SDP")
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        await self._flush_candidates()

    async def _handle_candidate(self, payload: Dict[str, Any]) -> None:
        raw = payload.get("candidate")
        if not raw:
            # end-of-candidates
            return
        if not isinstance(raw, str):
            raise MalformedMessage(f"ICE candidate for {self._session_id} is not a string")
        try:
            # aiortc asserts on a short candidate line
            candidate = candidate_from_sdp(raw.split(":", 1)[1] if raw.startswith("candidate:") else raw)
        except (AssertionError, IndexError, ValueError) as exc:
            raise MalformedMessage(f"Unparseable ICE candidate for {self._session_id}: {raw!r}") from exc
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        if self._pc is None or self._pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            return
        await self._pc.addIceCandidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._pc.addIceCandidate(candidate)

    async def _set_track_enabled(self, kind: str, enabled: bool) -> None:
        track = self._media.video if kind == "video" else self._media.audio
        sender = self._senders.get(kind)
        if track is None or sender is None:
            raise InvalidState(f"No local {kind} track in this session")
        if kind == "video":
            self._video_enabled = enabled
        else:
            self._audio_enabled = enabled
        sender.replaceTrack(track if enabled else None)
        logger.info("Local %s %s for %s", kind, "enabled" if enabled else "muted", self._session_id)
        await self._send_signal(SignalAction.MEDIA_STATE, self.media_state)

    async def _handle_connection_state(self, state: str) -> None:
        status = _STATE_MAP.get(state)
        logger.info("Peer connection %s is %s", self._session_id, state)
        if status is None or self._closed:
            return
        await self._set_status(status)
        if status == CallStatus.ERROR:
            await _call(self._on_fatal, f"peer connection {state}")

    async def _set_status(self, status: CallStatus) -> None:
        if status == self._status:
            return
        self._status = status
        await _call(self._on_status, status)

    def _is_duplicate(self, message_id: str) -> bool:
        if message_id in self._seen:
            return True
        self._seen.add(message_id)
        self._seen_order.append(message_id)
        while len(self._seen_order) > SEEN_WINDOW:
            self._seen.discard(self._seen_order.popleft())
        return False


class PeerConnectionRegistry:
    """At most one live peer connection manager per session id."""

    def __init__(self) -> None:
        self._managers: Dict[str, PeerConnectionManager] = {}

    def register(self, manager: PeerConnectionManager) -> PeerConnectionManager:
        existing = self._managers.get(manager.session_id)
        if existing is not None and not existing.closed:
            raise InvalidState(f"Session {manager.session_id} already has a peer connection")
        self._managers[manager.session_id] = manager
        return manager

    def get(self, session_id: str) -> Optional[PeerConnectionManager]:
        return self._managers.get(session_id)

    async def release(self, session_id: str) -> None:
        manager = self._managers.pop(session_id, None)
        if manager is not None:
            await manager.close()
