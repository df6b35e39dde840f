"""Core protocol primitives shared between server and client.

Signaling travels as length-prefixed JSON envelopes over TCP (or as plain JSON
text frames over the WebSocket endpoint). This module centralises the
serialization helpers and message schemas so both halves stay in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import logging
import struct
import uuid

from shared.errors import MalformedMessage

logger = logging.getLogger(__name__)


class SignalAction(str, Enum):
    """Signaling events exchanged within a session room."""

    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    PEER_JOINED = "peer_joined"
    PEER_LEFT = "peer_left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"
    MEDIA_STATE = "media_state"
    CHAT_MESSAGE = "chat_message"
    SESSION_ACCEPT = "session_accept"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SESSION_CANCEL = "session_cancel"
    SESSION_STATUS = "session_status"
    BILLING_UPDATE = "billing_update"
    ERROR = "error"


# Actions the hub forwards verbatim to the other members of the room.
RELAYED_ACTIONS = frozenset(
    {
        SignalAction.OFFER,
        SignalAction.ANSWER,
        SignalAction.ICE_CANDIDATE,
        SignalAction.MEDIA_STATE,
        SignalAction.CHAT_MESSAGE,
    }
)

SESSION_ACTIONS = frozenset(
    {
        SignalAction.SESSION_ACCEPT,
        SignalAction.SESSION_START,
        SignalAction.SESSION_END,
        SignalAction.SESSION_CANCEL,
    }
)


class CallStatus(str, Enum):
    """Client-local call progress; never persisted."""

    IDLE = "idle"
    LOADING_SESSION = "loading_session"
    WAITING_PERMISSION = "waiting_permission"
    PERMISSION_GRANTED = "permission_granted"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    ENDED = "ended"


def new_message_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ChatMessage:
    """Chat payload carried on the peer data channel.

    ``is_own`` is computed locally at send/receipt time and never transmitted.
    """

    id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: str
    is_own: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, is_own: bool = False) -> "ChatMessage":
        return cls(
            id=str(data.get("id") or new_message_id()),
            sender_id=str(data["sender_id"]),
            sender_name=str(data.get("sender_name") or data["sender_id"]),
            text=str(data["text"]),
            timestamp=str(data.get("timestamp") or utc_now_iso()),
            is_own=is_own,
        )

    @classmethod
    def from_json(cls, raw: Any) -> "ChatMessage":
        """Decode a data-channel payload, raising ``MalformedMessage`` on garbage."""

        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedMessage("chat payload is not valid UTF-8") from exc
        if not isinstance(raw, str):
            raise MalformedMessage(f"unsupported chat payload type {type(raw).__name__}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedMessage("chat payload is not valid JSON") from exc
        if not isinstance(data, dict):
            raise MalformedMessage("chat payload must be a JSON object")
        try:
            message = cls.from_dict(data)
        except (KeyError, TypeError) as exc:
            raise MalformedMessage(f"chat payload missing field: {exc}") from exc
        if not message.text.strip():
            raise MalformedMessage("chat payload has empty text")
        return message


class SignalEnvelope(TypedDict):
    """Generic representation of signaling messages."""

    action: str
    message_id: str
    data: Dict[str, Any]


def build_envelope(action: SignalAction, data: Dict[str, Any], *, message_id: Optional[str] = None) -> SignalEnvelope:
    return {
        "action": action.value,
        "message_id": message_id or new_message_id(),
        "data": data,
    }


def encode_signal_message(
    action: SignalAction,
    data: Dict[str, Any],
    *,
    message_id: Optional[str] = None,
) -> bytes:
    """Serialize a signaling message using length-prefixed JSON."""

    envelope = build_envelope(action, data, message_id=message_id)
    return encode_envelope(envelope)


def encode_envelope(envelope: SignalEnvelope) -> bytes:
    payload = json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_signal_stream(buffer: bytes) -> tuple[list[SignalEnvelope], bytes]:
    """Decode as many complete signaling messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer).
    """

    offset = 0
    messages: list[SignalEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        try:
            messages.append(parse_envelope(buffer[start:end]))
        except MalformedMessage as exc:
            logger.warning("Dropping malformed signaling frame: %s", exc)
        offset = end

    return messages, buffer[offset:]


def parse_envelope(raw: bytes | str) -> SignalEnvelope:
    """Validate one JSON envelope from either transport."""

    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        envelope = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessage("signaling payload is not valid JSON") from exc
    if not isinstance(envelope, dict) or "action" not in envelope:
        raise MalformedMessage("signaling payload has no action")
    try:
        SignalAction(envelope["action"])
    except ValueError as exc:
        raise MalformedMessage(f"unknown signaling action {envelope['action']!r}") from exc
    data = envelope.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedMessage("signaling data must be a JSON object")
    return {
        "action": envelope["action"],
        "message_id": str(envelope.get("message_id") or new_message_id()),
        "data": data,
    }


@dataclass(slots=True)
class ClientIdentity:
    """Identity packet exchanged during the signaling handshake."""

    user_id: str
    role: str
    session_id: str
    client_version: str = "0.1.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "session_id": self.session_id,
            "client_version": self.client_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientIdentity":
        try:
            return cls(
                user_id=str(data["user_id"]),
                role=str(data["role"]),
                session_id=str(data["session_id"]),
                client_version=data.get("client_version", "0.1.0"),
            )
        except KeyError as exc:
            raise MalformedMessage(f"hello is missing {exc}") from exc


DEFAULT_SIGNAL_PORT = 55100
DEFAULT_API_PORT = 8710
DEFAULT_TICK_SECONDS = 60.0
DEFAULT_GRACE_SECONDS = 30.0
HEARTBEAT_INTERVAL_SECONDS = 3.0
