from __future__ import annotations

import asyncio
import logging
from typing import Optional

from shared.errors import LiveSessionError, MalformedMessage
from shared.models import Principal
from shared.protocol import (
    RELAYED_ACTIONS,
    SESSION_ACTIONS,
    ClientIdentity,
    SignalAction,
    SignalEnvelope,
    build_envelope,
    decode_signal_stream,
    encode_signal_message,
)

from .session_manager import SessionManager
from .signaling import SignalingHub, TcpPeer

logger = logging.getLogger(__name__)


class SignalRouter:
    """Transport-neutral handling of envelopes sent by a joined room member."""

    def __init__(self, hub: SignalingHub, session_manager: SessionManager) -> None:
        self._hub = hub
        self._session_manager = session_manager

    async def handle(self, principal: Principal, session_id: str, envelope: SignalEnvelope) -> Optional[SignalEnvelope]:
        """Process one envelope; returns an ``error`` envelope for the sender, if any."""

        action = SignalAction(envelope["action"])
        payload = envelope["data"]

        if action == SignalAction.HEARTBEAT:
            self._hub.touch(session_id, principal.user_id)
            return None

        if action in RELAYED_ACTIONS:
            await self._hub.relay(session_id, principal.user_id, envelope)
            return None

        if action in SESSION_ACTIONS:
            if self._hub.is_duplicate(session_id, envelope["message_id"]):
                logger.debug("Dropping duplicate %s from %s", action.value, principal.user_id)
                return None
            key = payload.get("idempotency_key")
            try:
                await self._run_session_action(principal, session_id, action, key)
            except LiveSessionError as exc:
                logger.info("%s from %s on %s rejected: %s", action.value, principal.user_id, session_id, exc)
                return build_envelope(
                    SignalAction.ERROR,
                    {"code": exc.code, "reason": str(exc), "action": action.value},
                )
            return None

        logger.debug("Unhandled signaling action %s from %s", action, principal.user_id)
        return None

    async def _run_session_action(
        self,
        principal: Principal,
        session_id: str,
        action: SignalAction,
        key: Optional[str],
    ) -> None:
        manager = self._session_manager
        if action == SignalAction.SESSION_ACCEPT:
            await manager.accept_session(principal, session_id, idempotency_key=key)
        elif action == SignalAction.SESSION_START:
            await manager.start_session(principal, session_id, idempotency_key=key)
        elif action == SignalAction.SESSION_END:
            await manager.end_session(session_id, principal=principal)
        elif action == SignalAction.SESSION_CANCEL:
            await manager.cancel_session(principal, session_id, idempotency_key=key)


class SignalingServer:
    """TCP signaling endpoint: handshake, room membership and relaying."""

    def __init__(
        self,
        host: str,
        port: int,
        hub: SignalingHub,
        session_manager: SessionManager,
    ) -> None:
        self._host = host
        self._port = port
        self._hub = hub
        self._session_manager = session_manager
        self._router = SignalRouter(hub, session_manager)
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""

        if self._server is None or not self._server.sockets:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Signaling server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer_address = writer.get_extra_info("peername")
        logger.info("Incoming signaling connection from %s", peer_address)

        buffer = b""
        peer: Optional[TcpPeer] = None
        principal: Optional[Principal] = None
        session_id: Optional[str] = None
        try:
            # Expect initial HELLO with identity
            while peer is None:
                data = await reader.read(4096)
                if not data:
                    raise ConnectionError("connection closed before handshake")
                buffer += data
                messages, buffer = decode_signal_stream(buffer)
                for message in messages:
                    if message["action"] != SignalAction.HELLO.value:
                        raise MalformedMessage("Expected HELLO as first message")
                    identity = ClientIdentity.from_dict(message["data"])
                    try:
                        principal = Principal.parse(identity.user_id, identity.role)
                        session = await self._session_manager.authorize_join(principal, identity.session_id)
                    except (LiveSessionError, ValueError) as exc:
                        code = getattr(exc, "code", "bad_request")
                        logger.warning("Rejected %s for session %s: %s", identity.user_id, identity.session_id, exc)
                        writer.write(encode_signal_message(SignalAction.ERROR, {"code": code, "reason": str(exc)}))
                        await writer.drain()
                        return
                    session_id = session.session_id
                    peer = TcpPeer(user_id=principal.user_id, role=principal.role.value, writer=writer)
                    others = await self._hub.join(session_id, peer)
                    await peer.deliver(
                        build_envelope(
                            SignalAction.WELCOME,
                            {"session": session.to_dict(), "peers": others},
                        )
                    )
                    break
            assert peer is not None and principal is not None and session_id is not None

            while True:
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
                peer.touch()
                messages, buffer = decode_signal_stream(buffer)
                for message in messages:
                    reply = await self._router.handle(principal, session_id, message)
                    if reply is not None:
                        await peer.deliver(reply)
        except (ConnectionError, MalformedMessage) as exc:
            logger.info("Signaling connection from %s closed: %s", peer_address, exc)
        except Exception as exc:
            logger.exception("Error while handling signaling client %s: %s", peer_address, exc)
        finally:
            if peer is not None and session_id is not None:
                await self._hub.leave(session_id, peer.user_id, peer)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
