"""Domain records for sessions, participants and principals."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from shared.money import ZERO, seconds_to_minutes, to_money


class SessionMode(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"


class SessionStatus(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"
    ENDED_INSUFFICIENT_FUNDS = "ended_insufficient_funds"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.ENDED,
        SessionStatus.CANCELLED,
        SessionStatus.ENDED_INSUFFICIENT_FUNDS,
    }
)


class Role(str, Enum):
    CLIENT = "client"
    READER = "reader"
    ADMIN = "admin"


class EndReason(str, Enum):
    USER_ENDED = "user_ended"
    PEER_DISCONNECTED = "peer_disconnected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WITHDRAWN = "withdrawn"
    READER_UNAVAILABLE = "reader_unavailable"
    CONNECTION_FAILED = "connection_failed"
    SERVER_SHUTDOWN = "server_shutdown"


@dataclass(frozen=True, slots=True)
class Principal:
    """Already-authenticated caller as resolved by the identity provider."""

    user_id: str
    role: Role

    @classmethod
    def parse(cls, user_id: str, role: str) -> "Principal":
        return cls(user_id=user_id, role=Role(role.lower()))


@dataclass(slots=True)
class UserProfile:
    user_id: str
    display_name: str
    role: Role
    avatar_url: Optional[str] = None
    rate_per_minute: Optional[Decimal] = None
    available: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        rate = data.get("rate_per_minute")
        return cls(
            user_id=str(data["user_id"]),
            display_name=str(data.get("display_name") or data["user_id"]),
            role=Role(data.get("role", Role.CLIENT.value)),
            avatar_url=data.get("avatar_url"),
            rate_per_minute=to_money(rate) if rate is not None else None,
            available=bool(data.get("available", True)),
        )


@dataclass(slots=True)
class Session:
    """One billed reader-client interaction."""

    session_id: str
    reader_id: str
    client_id: str
    rate_per_minute: Decimal
    mode: SessionMode
    requested_at: float
    reader_name: str = ""
    reader_avatar: Optional[str] = None
    client_name: str = ""
    client_avatar: Optional[str] = None
    status: SessionStatus = SessionStatus.REQUESTED
    billed_seconds: int = 0
    amount_charged: Decimal = ZERO
    accepted_at: Optional[float] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    notes: str = ""
    applied_keys: Dict[str, str] = field(default_factory=dict)

    @property
    def billed_minutes(self) -> Decimal:
        return seconds_to_minutes(self.billed_seconds)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.reader_id, self.client_id)

    def copy(self) -> "Session":
        return replace(self, applied_keys=dict(self.applied_keys))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "reader_id": self.reader_id,
            "client_id": self.client_id,
            "reader_name": self.reader_name,
            "reader_avatar": self.reader_avatar,
            "client_name": self.client_name,
            "client_avatar": self.client_avatar,
            "rate_per_minute": str(self.rate_per_minute),
            "mode": self.mode.value,
            "status": self.status.value,
            "billed_seconds": self.billed_seconds,
            "billed_minutes": str(self.billed_minutes),
            "amount_charged": str(self.amount_charged),
            "requested_at": self.requested_at,
            "accepted_at": self.accepted_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason,
            "notes": self.notes,
            "applied_keys": dict(self.applied_keys),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            reader_id=data["reader_id"],
            client_id=data["client_id"],
            reader_name=data.get("reader_name", ""),
            reader_avatar=data.get("reader_avatar"),
            client_name=data.get("client_name", ""),
            client_avatar=data.get("client_avatar"),
            rate_per_minute=Decimal(data["rate_per_minute"]),
            mode=SessionMode(data["mode"]),
            status=SessionStatus(data["status"]),
            billed_seconds=int(data.get("billed_seconds", 0)),
            amount_charged=Decimal(data.get("amount_charged", "0.00")),
            requested_at=float(data["requested_at"]),
            accepted_at=data.get("accepted_at"),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            end_reason=data.get("end_reason"),
            notes=data.get("notes", ""),
            applied_keys=dict(data.get("applied_keys") or {}),
        )
