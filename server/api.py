from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from shared.errors import (
    ChannelUnavailable,
    Forbidden,
    InsufficientFunds,
    InvalidState,
    LiveSessionError,
    MalformedMessage,
    SessionNotFound,
)
from shared.models import EndReason, Principal, SessionMode
from shared.protocol import (
    ClientIdentity,
    SignalAction,
    SignalEnvelope,
    build_envelope,
    parse_envelope,
)

from .session_manager import SessionManager
from .signaling import SignalingHub
from .signaling_server import SignalRouter

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[LiveSessionError], int] = {
    SessionNotFound: 404,
    Forbidden: 403,
    InvalidState: 409,
    InsufficientFunds: 402,
    ChannelUnavailable: 503,
    MalformedMessage: 400,
}

# Reasons a participant may give when ending a call themselves.
_CALLER_END_REASONS = frozenset({EndReason.USER_ENDED, EndReason.CONNECTION_FAILED})


def status_for_error(exc: LiveSessionError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


@dataclass(slots=True)
class WebSocketPeer:
    """Room member connected through the browser WebSocket endpoint."""

    user_id: str
    role: str
    websocket: WebSocket
    last_seen: float = field(default_factory=lambda: time.monotonic())

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def deliver(self, envelope: SignalEnvelope) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionError(f"WebSocket for {self.user_id} is closed")
        await self.websocket.send_json(envelope)

    async def close(self) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close()
        except RuntimeError:  # pragma: no cover - already closing
            logger.debug("WebSocket for %s was already closing", self.user_id)


def _principal(user_id: Optional[str], role: Optional[str]) -> Principal:
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="X-User-Id and X-User-Role headers are required")
    try:
        return Principal.parse(user_id.strip(), role.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown role '{role}'") from exc


class SessionApi:
    """FastAPI application exposing live sessions to the surrounding web app."""

    def __init__(self, session_manager: SessionManager, hub: SignalingHub) -> None:
        self._session_manager = session_manager
        self._hub = hub
        self._router = SignalRouter(hub, session_manager)
        self._app = FastAPI(title="Live reading sessions")

        @self._app.exception_handler(LiveSessionError)
        async def live_session_error(request: Request, exc: LiveSessionError) -> JSONResponse:
            status_code = status_for_error(exc)
            logger.info("%s %s -> %s: %s", request.method, request.url.path, status_code, exc)
            return JSONResponse(
                status_code=status_code,
                content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
            )

        @self._app.exception_handler(RequestValidationError)
        async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
            return JSONResponse(
                status_code=400,
                content={"error": "bad_request", "detail": exc.errors()},
            )

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._session_manager.snapshot()
            return {
                "status": "ok",
                "active_count": snapshot["active_count"],
                "billing_loops": len(snapshot["billing_loops"]),
                "timestamp": time.time(),
            }

        @self._app.get("/api/events")
        async def events(limit: int = 100) -> list:
            return await self._session_manager.get_recent_events(limit=min(limit, 1000))

        @self._app.post("/api/sessions", status_code=201)
        async def create_session(
            payload: dict = Body(...),
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            reader_id = str(payload.get("reader_id") or "").strip()
            if not reader_id:
                raise HTTPException(status_code=400, detail="reader_id is required")
            try:
                mode = SessionMode(str(payload.get("mode", "")).lower())
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="mode must be video, audio or chat") from exc
            notes = str(payload.get("notes") or "")
            session = await self._session_manager.request_session(principal, reader_id, mode, notes=notes)
            return session.to_dict()

        @self._app.get("/api/sessions/{session_id}")
        async def get_session(
            session_id: str,
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            session = await self._session_manager.get_session(session_id)
            if not session.is_participant(principal.user_id):
                raise Forbidden(f"{principal.user_id} is not a participant of {session_id}")
            return session.to_dict()

        @self._app.post("/api/sessions/{session_id}/accept")
        async def accept_session(
            session_id: str,
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
            idempotency_key: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            session = await self._session_manager.accept_session(
                principal, session_id, idempotency_key=idempotency_key
            )
            return session.to_dict()

        @self._app.post("/api/sessions/{session_id}/start")
        async def start_session(
            session_id: str,
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
            idempotency_key: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            session = await self._session_manager.start_session(
                principal, session_id, idempotency_key=idempotency_key
            )
            return session.to_dict()

        @self._app.post("/api/sessions/{session_id}/end")
        async def end_session(
            session_id: str,
            payload: Optional[dict] = Body(None),
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            raw_reason = (payload or {}).get("reason") or EndReason.USER_ENDED.value
            try:
                reason = EndReason(str(raw_reason))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unknown end reason '{raw_reason}'") from exc
            if reason not in _CALLER_END_REASONS:
                raise HTTPException(status_code=400, detail=f"'{reason.value}' cannot be set by a participant")
            session = await self._session_manager.end_session(session_id, principal=principal, reason=reason)
            return session.to_dict()

        @self._app.post("/api/sessions/{session_id}/cancel")
        async def cancel_session(
            session_id: str,
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
            idempotency_key: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            session = await self._session_manager.cancel_session(
                principal, session_id, idempotency_key=idempotency_key
            )
            return session.to_dict()

        @self._app.get("/api/sessions/{session_id}/billing")
        async def billing(
            session_id: str,
            x_user_id: Optional[str] = Header(None),
            x_user_role: Optional[str] = Header(None),
        ) -> dict:
            principal = _principal(x_user_id, x_user_role)
            return await self._session_manager.billing_status(principal, session_id)

        @self._app.websocket("/ws/sessions/{session_id}")
        async def ws_session(websocket: WebSocket, session_id: str) -> None:
            await websocket.accept()
            await self._serve_websocket(websocket, session_id)

    @property
    def app(self) -> FastAPI:
        return self._app

    async def _serve_websocket(self, websocket: WebSocket, session_id: str) -> None:
        peer: Optional[WebSocketPeer] = None
        try:
            hello = parse_envelope(await websocket.receive_text())
            if hello["action"] != SignalAction.HELLO.value:
                raise MalformedMessage("Expected HELLO as first message")
            identity = ClientIdentity.from_dict({"session_id": session_id, **hello["data"]})
            if identity.session_id != session_id:
                raise MalformedMessage("HELLO names a different session")
            try:
                principal = Principal.parse(identity.user_id, identity.role)
                session = await self._session_manager.authorize_join(principal, session_id)
            except (LiveSessionError, ValueError) as exc:
                code = getattr(exc, "code", "bad_request")
                logger.warning("Rejected WebSocket %s for session %s: %s", identity.user_id, session_id, exc)
                await websocket.send_json(build_envelope(SignalAction.ERROR, {"code": code, "reason": str(exc)}))
                await websocket.close(code=1008)
                return

            peer = WebSocketPeer(user_id=principal.user_id, role=principal.role.value, websocket=websocket)
            others = await self._hub.join(session_id, peer)
            await peer.deliver(build_envelope(SignalAction.WELCOME, {"session": session.to_dict(), "peers": others}))

            while True:
                raw = await websocket.receive_text()
                peer.touch()
                try:
                    envelope = parse_envelope(raw)
                except MalformedMessage as exc:
                    logger.warning("Dropping malformed WebSocket frame from %s: %s", principal.user_id, exc)
                    continue
                reply = await self._router.handle(principal, session_id, envelope)
                if reply is not None:
                    await peer.deliver(reply)
        except WebSocketDisconnect:
            logger.info("WebSocket for session %s disconnected", session_id)
        except MalformedMessage as exc:
            logger.info("Closing WebSocket for session %s: %s", session_id, exc)
            if websocket.application_state == WebSocketState.CONNECTED:
                await websocket.send_json(build_envelope(SignalAction.ERROR, {"code": exc.code, "reason": str(exc)}))
                await websocket.close(code=1003)
        finally:
            if peer is not None:
                await self._hub.leave(session_id, peer.user_id, peer)


class ApiServer:
    """Background task helper for running the session API under uvicorn."""

    def __init__(
        self,
        session_manager: SessionManager,
        hub: SignalingHub,
        *,
        host: str,
        port: int,
    ) -> None:
        self._api = SessionApi(session_manager, hub)
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._api.app

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._api.app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Session API available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
