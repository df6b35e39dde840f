"""Session record, balance and user directory stores.

The core only needs key-value records with a handful of atomic operations;
the in-memory implementations below serialise every call behind an
``asyncio.Lock`` so each operation is one indivisible step. The JSON store
persists each committed write so sessions survive a restart.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

import aiofiles

from shared.errors import InsufficientFunds, SessionNotFound
from shared.models import Session, SessionStatus, UserProfile
from shared.money import ZERO, to_money

logger = logging.getLogger(__name__)

_SET_ONCE_FIELDS = frozenset({"accepted_at", "started_at", "ended_at"})
_IMMUTABLE_FIELDS = frozenset({"session_id", "reader_id", "client_id", "rate_per_minute", "status"})


class SessionStore(Protocol):
    async def create(self, session: Session) -> Session: ...

    async def get(self, session_id: str) -> Session: ...

    async def compare_and_swap_status(
        self,
        session_id: str,
        expected: SessionStatus,
        new: SessionStatus,
        extra_fields: Optional[Mapping[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Optional[Session]: ...

    async def increment_billing(self, session_id: str, seconds_delta: int, amount_delta: Decimal) -> Optional[Session]: ...

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> list[Session]: ...


class BalanceStore(Protocol):
    async def get_balance(self, user_id: str) -> Decimal: ...

    async def debit(self, user_id: str, amount: Decimal) -> Decimal: ...

    async def credit(self, user_id: str, amount: Decimal) -> Decimal: ...


class UserDirectory(Protocol):
    async def get_profile(self, user_id: str) -> Optional[UserProfile]: ...


class InMemorySessionStore:
    """Dict-backed session records; every public call is atomic."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: Session) -> Session:
        async with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session '{session.session_id}' already exists")
            self._sessions[session.session_id] = session.copy()
            await self._committed()
            return session.copy()

    async def get(self, session_id: str) -> Session:
        async with self._lock:
            return self._get_locked(session_id).copy()

    async def compare_and_swap_status(
        self,
        session_id: str,
        expected: SessionStatus,
        new: SessionStatus,
        extra_fields: Optional[Mapping[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Optional[Session]:
        """Move ``expected`` to ``new`` in one step; ``None`` when the status differs."""

        async with self._lock:
            session = self._get_locked(session_id)
            if session.status != expected:
                return None
            for name, value in (extra_fields or {}).items():
                if name in _IMMUTABLE_FIELDS:
                    raise ValueError(f"Field '{name}' cannot be changed by a transition")
                if name in _SET_ONCE_FIELDS and getattr(session, name) is not None:
                    continue
                setattr(session, name, value)
            session.status = new
            if idempotency_key:
                session.applied_keys[new.value] = idempotency_key
            await self._committed()
            return session.copy()

    async def increment_billing(self, session_id: str, seconds_delta: int, amount_delta: Decimal) -> Optional[Session]:
        """Add billed time and money; refused (``None``) once the session left ``active``."""

        if seconds_delta < 0 or amount_delta < 0:
            raise ValueError("billing increments must be non-negative")
        async with self._lock:
            session = self._get_locked(session_id)
            if session.status != SessionStatus.ACTIVE:
                return None
            session.billed_seconds += seconds_delta
            session.amount_charged += amount_delta
            await self._committed()
            return session.copy()

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> list[Session]:
        async with self._lock:
            return [
                session.copy()
                for session in self._sessions.values()
                if status is None or session.status == status
            ]

    def _get_locked(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        return session

    async def _committed(self) -> None:
        """Hook invoked under the lock after every successful write."""


class JsonFileSessionStore(InMemorySessionStore):
    """Session store that rewrites a JSON snapshot after each committed write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path

    async def load(self) -> int:
        if not self._path.exists():
            return 0
        async with aiofiles.open(self._path, "r", encoding="utf-8") as handle:
            raw = await handle.read()
        records = json.loads(raw) if raw.strip() else []
        async with self._lock:
            for record in records:
                session = Session.from_dict(record)
                self._sessions[session.session_id] = session
        logger.info("Loaded %s sessions from %s", len(records), self._path)
        return len(records)

    async def _committed(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([session.to_dict() for session in self._sessions.values()], indent=2)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as handle:
            await handle.write(payload)
        os.replace(tmp_path, self._path)


class InMemoryBalanceStore:
    """Prepaid balances; ``debit`` is an atomic check-and-decrement."""

    def __init__(self, balances: Optional[Mapping[str, Any]] = None) -> None:
        self._balances: Dict[str, Decimal] = {
            user_id: to_money(amount) for user_id, amount in (balances or {}).items()
        }
        self._lock = asyncio.Lock()
        self._ledger: list[dict[str, object]] = []

    async def get_balance(self, user_id: str) -> Decimal:
        async with self._lock:
            return self._balances.get(user_id, ZERO)

    async def debit(self, user_id: str, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise ValueError("debit requires a positive amount")
        async with self._lock:
            balance = self._balances.get(user_id, ZERO)
            if amount > balance:
                raise InsufficientFunds(f"Balance {balance} of {user_id} cannot cover {amount}")
            self._balances[user_id] = balance - amount
            self._record(user_id, -amount)
            return self._balances[user_id]

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise ValueError("credit requires a positive amount")
        async with self._lock:
            self._balances[user_id] = self._balances.get(user_id, ZERO) + amount
            self._record(user_id, amount)
            return self._balances[user_id]

    async def ledger(self, user_id: Optional[str] = None) -> list[dict[str, object]]:
        async with self._lock:
            return [entry for entry in self._ledger if user_id is None or entry["user_id"] == user_id]

    def _record(self, user_id: str, amount: Decimal) -> None:
        self._ledger.append(
            {
                "user_id": user_id,
                "amount": amount,
                "balance_after": self._balances[user_id],
                "timestamp": time.time(),
            }
        )
        if len(self._ledger) > 1000:
            self._ledger.pop(0)


class InMemoryUserDirectory:
    def __init__(self, profiles: Iterable[UserProfile] = ()) -> None:
        self._profiles: Dict[str, UserProfile] = {profile.user_id: profile for profile in profiles}

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def add(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile


def load_seed(path: Path) -> tuple[InMemoryUserDirectory, InMemoryBalanceStore]:
    """Build a directory and balances from a JSON seed file.

    Expected shape: ``{"users": [{...profile...}], "balances": {"user": "10.00"}}``.
    """

    data = json.loads(path.read_text(encoding="utf-8"))
    profiles = [UserProfile.from_dict(entry) for entry in data.get("users", [])]
    return InMemoryUserDirectory(profiles), InMemoryBalanceStore(data.get("balances", {}))
