from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import RTCPeerConnection
from aiortc.contrib.media import MediaBlackhole

from shared.errors import ChannelUnavailable, InvalidState, LiveSessionError, MalformedMessage
from shared.models import Role, SessionMode, SessionStatus
from shared.protocol import (
    DEFAULT_SIGNAL_PORT,
    RELAYED_ACTIONS,
    CallStatus,
    ChatMessage,
    ClientIdentity,
    SignalAction,
)

from .chat_relay import ChannelEvent, ChatNotice, ChatRelay
from .media import LocalMedia, MediaPermissionError, acquire_local_media
from .peer_connection import PeerConnectionManager, PeerConnectionRegistry
from .signaling_client import HandshakeRejected, SignalingClient, backoff_delay

logger = logging.getLogger(__name__)

StatusListener = Callable[[CallStatus], Awaitable[None] | None]
PayloadListener = Callable[[Dict[str, Any]], Awaitable[None] | None]

_default_registry = PeerConnectionRegistry()


async def _emit(listener: Optional[Callable[..., Any]], *args: Any) -> None:
    if listener is None:
        return
    try:
        result = listener(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Call listener failed")


class CallSession:
    """Drives one live session on this device.

    Wires the signaling client, the peer connection and the chat relay
    together and tracks the local call status from ``loading_session``
    through ``connected`` to ``ended`` or ``error``.
    """

    def __init__(
        self,
        identity: ClientIdentity,
        *,
        display_name: Optional[str] = None,
        server_host: str = "127.0.0.1",
        signal_port: int = DEFAULT_SIGNAL_PORT,
        signaling_factory: Optional[Callable[..., SignalingClient]] = None,
        media_factory: Callable[[SessionMode], LocalMedia] = acquire_local_media,
        pc_factory: Callable[..., Any] = RTCPeerConnection,
        registry: Optional[PeerConnectionRegistry] = None,
        on_status: Optional[StatusListener] = None,
        on_chat: Optional[Callable[[ChatMessage], Awaitable[None] | None]] = None,
        on_notice: Optional[Callable[[ChatNotice], Awaitable[None] | None]] = None,
        on_billing: Optional[PayloadListener] = None,
        on_error: Optional[PayloadListener] = None,
    ) -> None:
        self._identity = identity
        self._role = Role(identity.role)
        self._server_host = server_host
        self._signal_port = signal_port
        self._signaling_factory = signaling_factory or SignalingClient
        self._media_factory = media_factory
        self._pc_factory = pc_factory
        self._registry = registry or _default_registry
        self._on_status = on_status
        self._on_billing = on_billing
        self._on_error = on_error
        self._status = CallStatus.IDLE
        self._session: Dict[str, Any] = {}
        self._billing: Optional[Dict[str, Any]] = None
        self._signaling: Optional[SignalingClient] = None
        self._peer: Optional[PeerConnectionManager] = None
        self._blackhole = MediaBlackhole()
        self._start_sent = False
        self._ending = False
        self._ended = asyncio.Event()
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self.chat = ChatRelay(
            identity.user_id,
            display_name or identity.user_id,
            on_message=on_chat,
            on_notice=on_notice,
        )

    @property
    def session_id(self) -> str:
        return self._identity.session_id

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def session(self) -> Dict[str, Any]:
        return dict(self._session)

    @property
    def billing(self) -> Optional[Dict[str, Any]]:
        return self._billing

    @property
    def peer(self) -> Optional[PeerConnectionManager]:
        return self._peer

    async def run(self) -> None:
        """Join the session room, acquire media and prepare the peer connection."""

        await self._set_status(CallStatus.LOADING_SESSION)
        self._signaling = self._signaling_factory(
            self._server_host,
            self._signal_port,
            self._identity,
            self._handle_signal,
            on_disconnect=self._on_signaling_disconnect,
        )
        try:
            welcome = await self._signaling.connect()
        except (ChannelUnavailable, HandshakeRejected) as exc:
            logger.error("Could not join session %s: %s", self.session_id, exc)
            await _emit(self._on_error, {"code": exc.code, "reason": str(exc)})
            await self._finish(CallStatus.ERROR)
            return

        self._session = dict(welcome.get("session") or {})
        if SessionStatus(self._session.get("status", SessionStatus.REQUESTED.value)).is_terminal:
            await self._finish(CallStatus.ENDED)
            return

        await self._set_status(CallStatus.WAITING_PERMISSION)
        mode = SessionMode(self._session.get("mode", SessionMode.CHAT.value))
        try:
            media = self._media_factory(mode)
        except MediaPermissionError as exc:
            logger.error("Media unavailable for %s: %s", self.session_id, exc)
            await _emit(self._on_error, {"code": "media_unavailable", "reason": str(exc)})
            await self._finish(CallStatus.ERROR)
            return
        await self._set_status(CallStatus.PERMISSION_GRANTED)

        try:
            self._peer = self._registry.register(
                PeerConnectionManager(
                    self.session_id,
                    is_offerer=self._role == Role.CLIENT,
                    send_signal=self._send_signal,
                    media=media,
                    pc_factory=self._pc_factory,
                    on_status=self._on_peer_status,
                    on_fatal=self._on_peer_fatal,
                    on_data_channel=self.chat.attach,
                    on_remote_track=self._on_remote_track,
                )
            )
        except InvalidState as exc:
            logger.error("Session %s is already open on this device: %s", self.session_id, exc)
            media.stop()
            await self._finish(CallStatus.ERROR)
            return
        peers = list(welcome.get("peers") or [])
        if self._role == Role.CLIENT and peers:
            await self._peer.start()
        else:
            await self._set_status(CallStatus.CONNECTING)

    async def wait_ended(self) -> CallStatus:
        await self._ended.wait()
        return self._status

    async def send_chat(self, text: str) -> ChatMessage:
        return await self.chat.send(text)

    async def set_video_enabled(self, enabled: bool) -> None:
        if self._peer is None:
            raise ChannelUnavailable("Call is not connected")
        await self._peer.set_video_enabled(enabled)

    async def set_audio_enabled(self, enabled: bool) -> None:
        if self._peer is None:
            raise ChannelUnavailable("Call is not connected")
        await self._peer.set_audio_enabled(enabled)

    async def hang_up(self) -> None:
        """Leave the call: cancel a pending request or end an active session."""

        if self._ending:
            return
        status = self._session.get("status")
        if status == SessionStatus.ACTIVE.value or self._start_sent:
            await self._send_session_action(SignalAction.SESSION_END, {})
        elif status == SessionStatus.REQUESTED.value:
            await self._send_session_action(
                SignalAction.SESSION_CANCEL, {"idempotency_key": f"{self.session_id}:cancel"}
            )
        await self._finish(CallStatus.ENDED)

    async def _handle_signal(self, action: SignalAction, payload: Dict[str, Any]) -> None:
        if action == SignalAction.CHAT_MESSAGE:
            # Out-of-band chat relayed by the server
            await self.chat.handle_event(ChannelEvent.MESSAGE, json.dumps(payload))
        elif action in RELAYED_ACTIONS:
            if self._peer is None:
                logger.debug("Dropping %s before the peer connection exists", action.value)
                return
            try:
                await self._peer.handle_signal(action, payload)
            except MalformedMessage as exc:
                logger.warning("Dropping malformed %s for %s: %s", action.value, self.session_id, exc)
        elif action == SignalAction.PEER_JOINED:
            logger.info("%s joined session %s", payload.get("user_id"), self.session_id)
            if self._role == Role.CLIENT and self._peer is not None:
                await self._peer.start()
        elif action == SignalAction.PEER_LEFT:
            logger.info("%s left session %s", payload.get("user_id"), self.session_id)
        elif action == SignalAction.SESSION_STATUS:
            await self._apply_session(payload.get("session") or {})
        elif action == SignalAction.BILLING_UPDATE:
            if self._status != CallStatus.CONNECTED:
                logger.debug("Ignoring billing update while %s", self._status.value)
                return
            self._billing = dict(payload)
            await _emit(self._on_billing, self._billing)
        elif action == SignalAction.ERROR:
            logger.warning("Server reported %s: %s", payload.get("code"), payload.get("reason"))
            await _emit(self._on_error, payload)

    async def _apply_session(self, session: Dict[str, Any]) -> None:
        if not session:
            return
        self._session = dict(session)
        status = SessionStatus(session.get("status", SessionStatus.REQUESTED.value))
        if status.is_terminal:
            logger.info("Session %s is %s (%s)", self.session_id, status.value, session.get("end_reason"))
            await self._finish(CallStatus.ENDED)

    async def _on_peer_status(self, status: CallStatus) -> None:
        if self._ending or status == CallStatus.ENDED:
            return
        await self._set_status(status)
        if status == CallStatus.CONNECTED and not self._start_sent:
            self._start_sent = True
            # Both parties send the same key so their starts collapse into one transition
            await self._send_session_action(
                SignalAction.SESSION_START, {"idempotency_key": f"{self.session_id}:start"}
            )

    async def _on_peer_fatal(self, reason: str) -> None:
        logger.error("Peer connection for %s failed: %s", self.session_id, reason)
        if self._start_sent:
            await self._send_session_action(SignalAction.SESSION_END, {})
        await self._finish(CallStatus.ERROR)

    async def _on_remote_track(self, track: Any) -> None:
        self._blackhole.addTrack(track)
        await self._blackhole.start()

    async def _on_signaling_disconnect(self, reason: Optional[str]) -> None:
        if self._ending:
            return
        logger.warning("Signaling for %s dropped (%s); reconnecting", self.session_id, reason)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        assert self._signaling is not None
        await asyncio.sleep(backoff_delay(0))
        try:
            welcome = await self._signaling.connect()
        except (ChannelUnavailable, HandshakeRejected) as exc:
            logger.error("Giving up on session %s: %s", self.session_id, exc)
            await self._finish(CallStatus.ERROR)
            return
        await self._apply_session(welcome.get("session") or {})

    async def _send_signal(self, action: SignalAction, payload: Dict[str, object]) -> None:
        if self._signaling is None:
            raise ChannelUnavailable("Signaling is not connected")
        await self._signaling.send(action, payload)

    async def _send_session_action(self, action: SignalAction, payload: Dict[str, object]) -> None:
        try:
            await self._send_signal(action, payload)
        except LiveSessionError as exc:
            logger.warning("Could not send %s for %s: %s", action.value, self.session_id, exc)

    async def _finish(self, status: CallStatus) -> None:
        if self._ending:
            return
        self._ending = True
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        if self._peer is not None:
            await self._registry.release(self.session_id)
        await self._blackhole.stop()
        if self._signaling is not None:
            await self._signaling.close()
        await self._set_status(status)
        self._ended.set()

    async def _set_status(self, status: CallStatus) -> None:
        if status == self._status:
            return
        logger.info("Call %s: %s -> %s", self.session_id, self._status.value, status.value)
        self._status = status
        await _emit(self._on_status, status)
