from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from shared.errors import ChannelUnavailable, LiveSessionError
from shared.protocol import (
    HEARTBEAT_INTERVAL_SECONDS,
    ClientIdentity,
    SignalAction,
    decode_signal_stream,
    encode_signal_message,
    new_message_id,
)

logger = logging.getLogger(__name__)

RECONNECT_ATTEMPTS = 4
RECONNECT_BASE_DELAY_SECONDS = 0.5
RECONNECT_MAX_DELAY_SECONDS = 8.0
HANDSHAKE_TIMEOUT_SECONDS = 10.0
SEEN_WINDOW = 512

MessageCallback = Callable[[SignalAction, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class HandshakeRejected(LiveSessionError):
    """The server answered ``hello`` with an ``error`` envelope."""

    def __init__(self, code: str, reason: str) -> None:
        super().__init__(reason)
        self.code = code


def backoff_delay(attempt: int) -> float:
    return min(RECONNECT_MAX_DELAY_SECONDS, RECONNECT_BASE_DELAY_SECONDS * (2**attempt))


class SignalingClient:
    """Handles the TCP signaling connection for one session room."""

    def __init__(
        self,
        host: str,
        port: int,
        identity: ClientIdentity,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        attempts: int = RECONNECT_ATTEMPTS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._identity = identity
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._attempts = max(1, attempts)
        self._heartbeat_interval = heartbeat_interval
        self._handshake_timeout = handshake_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._tasks: list[asyncio.Task[None]] = []
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._rejection: Optional[HandshakeRejected] = None
        self._seen: Deque[str] = deque(maxlen=SEEN_WINDOW)
        self._stop = False
        self._disconnect_notified = False
        self.welcome: Dict[str, object] = {}

    @property
    def connected(self) -> bool:
        return self._connected.is_set() and not self._stop

    async def connect(self) -> Dict[str, object]:
        """Open the connection with bounded retries; returns the ``welcome`` payload."""

        last_error: Optional[BaseException] = None
        for attempt in range(self._attempts):
            try:
                return await self._connect_once()
            except HandshakeRejected:
                raise
            except (OSError, ConnectionError) as exc:
                last_error = exc
                await self._reset()
                if attempt + 1 >= self._attempts:
                    break
                delay = backoff_delay(attempt)
                logger.warning(
                    "Signaling connect to %s:%s failed (%s); retrying in %.1fs",
                    self._host,
                    self._port,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ChannelUnavailable(
            f"Signaling server {self._host}:{self._port} unreachable after {self._attempts} attempts: {last_error}"
        )

    async def send(self, action: SignalAction, payload: Dict[str, object], *, message_id: Optional[str] = None) -> str:
        if self._stop or self._writer is None:
            raise ChannelUnavailable("Signaling channel is not connected")
        message_id = message_id or new_message_id()
        self._send_queue.append(encode_signal_message(action, payload, message_id=message_id))
        self._send_event.set()
        return message_id

    async def close(self) -> None:
        self._stop = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks.clear()
        if self._writer:
            try:
                while self._send_queue:
                    self._writer.write(self._send_queue.popleft())
                await self._writer.drain()
            except Exception:
                logger.debug("Could not flush pending signaling messages", exc_info=True)
            self._send_queue.clear()
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        self._connected.clear()

    async def _connect_once(self) -> Dict[str, object]:
        logger.info("Connecting to signaling server %s:%s", self._host, self._port)
        self._stop = False
        self._disconnect_notified = False
        self._rejection = None
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        hello = encode_signal_message(SignalAction.HELLO, self._identity.to_dict())
        await self._send_raw(hello)
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._recv_loop()),
        ]
        try:
            await asyncio.wait_for(self._connected.wait(), self._handshake_timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionError(f"No handshake reply within {self._handshake_timeout}s") from exc
        if self._rejection is not None:
            rejection = self._rejection
            await self.close()
            raise rejection
        if self._stop:
            raise ConnectionError("Connection closed before handshake completed")
        self._tasks.append(asyncio.create_task(self._heartbeat_loop()))
        return self.welcome

    async def _reset(self) -> None:
        await self.close()
        self._buffer.clear()

    async def _drop(self, reason: str) -> None:
        if self._disconnect_notified:
            return
        self._disconnect_notified = True
        await self.close()
        await self._notify_disconnect(reason)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise ConnectionError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send signaling message")
                    if self._connected.is_set() and self._rejection is None:
                        await self._drop("send_error")
                    else:
                        self._stop = True
                        self._connected.set()
                    return

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed signaling connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_signal_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    action = SignalAction(message["action"])
                    payload = message["data"]
                    if not self._connected.is_set():
                        if action == SignalAction.ERROR:
                            self._rejection = HandshakeRejected(
                                str(payload.get("code", "error")), str(payload.get("reason", "rejected"))
                            )
                            self._connected.set()
                            return
                        if action == SignalAction.WELCOME:
                            self.welcome = payload
                            self._connected.set()
                            continue
                    if message["message_id"] in self._seen:
                        logger.debug("Dropping duplicate %s %s", action.value, message["message_id"])
                        continue
                    self._seen.append(message["message_id"])
                    await self._dispatch(action, payload)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Error while receiving from signaling server")
            disconnect_reason = "recv_error"
        finally:
            was_connected = self._connected.is_set() and self._rejection is None
            if not self._connected.is_set():
                self._connected.set()
                self._stop = True
            if was_connected and not self._stop:
                await self._drop(disconnect_reason or "connection_closed")

    async def _dispatch(self, action: SignalAction, payload: dict) -> None:
        try:
            result = self._on_message(action, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling signaling message %s", action)

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                timestamp_ms = int(time.time() * 1000)
                logger.debug("Sending heartbeat from %s at %s", self._identity.user_id, timestamp_ms)
                await self.send(SignalAction.HEARTBEAT, {"timestamp_ms": timestamp_ms})
        except (asyncio.CancelledError, ChannelUnavailable):
            pass
