from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from shared.errors import Forbidden, InsufficientFunds, InvalidState, SessionNotFound
from shared.models import EndReason, Principal, Role, Session, SessionMode, SessionStatus

from .store import BalanceStore, SessionStore, UserDirectory

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.REQUESTED: frozenset({SessionStatus.ACCEPTED, SessionStatus.CANCELLED}),
    SessionStatus.ACCEPTED: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.ENDED, SessionStatus.ENDED_INSUFFICIENT_FUNDS}),
}


class CallStateMachine:
    """Drives a session through request, accept, active and its terminal states.

    Each transition is a single compare-and-swap against the session store, so
    two racing callers produce exactly one winner. Retries carrying the same
    idempotency key as the winning call succeed without touching the record.
    """

    def __init__(
        self,
        sessions: SessionStore,
        balances: BalanceStore,
        users: UserDirectory,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = sessions
        self._balances = balances
        self._users = users
        self._clock = clock

    async def request(
        self,
        principal: Principal,
        reader_id: str,
        mode: SessionMode,
        *,
        notes: str = "",
    ) -> Session:
        if principal.role != Role.CLIENT:
            raise Forbidden("Only clients can request a reading")
        reader = await self._users.get_profile(reader_id)
        if reader is None:
            raise SessionNotFound(f"Reader '{reader_id}' not found")
        if reader.role != Role.READER or reader.rate_per_minute is None:
            raise Forbidden(f"User '{reader_id}' does not offer readings")
        if not reader.available:
            raise Forbidden(f"Reader '{reader_id}' is not available")
        client = await self._users.get_profile(principal.user_id)
        balance = await self._balances.get_balance(principal.user_id)
        if balance < reader.rate_per_minute:
            raise InsufficientFunds(
                f"Balance {balance} does not cover one minute at {reader.rate_per_minute}"
            )
        session = Session(
            session_id=uuid.uuid4().hex,
            reader_id=reader.user_id,
            client_id=principal.user_id,
            reader_name=reader.display_name,
            reader_avatar=reader.avatar_url,
            client_name=client.display_name if client else principal.user_id,
            client_avatar=client.avatar_url if client else None,
            rate_per_minute=reader.rate_per_minute,
            mode=mode,
            requested_at=self._clock(),
            notes=notes,
        )
        created = await self._sessions.create(session)
        logger.info(
            "Session %s requested by %s for reader %s (%s at %s/min)",
            created.session_id,
            created.client_id,
            created.reader_id,
            mode.value,
            created.rate_per_minute,
        )
        return created

    async def accept(self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None) -> Session:
        session = await self._sessions.get(session_id)
        if principal.user_id != session.reader_id:
            raise Forbidden(f"{principal.user_id} is not the reader assigned to {session_id}")
        return await self._transition(
            session,
            SessionStatus.REQUESTED,
            SessionStatus.ACCEPTED,
            {"accepted_at": self._clock()},
            idempotency_key=idempotency_key,
        )

    async def start(self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None) -> Session:
        session = await self._sessions.get(session_id)
        self._require_participant(principal, session)
        return await self._transition(
            session,
            SessionStatus.ACCEPTED,
            SessionStatus.ACTIVE,
            {"started_at": self._clock()},
            idempotency_key=idempotency_key,
        )

    async def end(
        self,
        principal: Optional[Principal],
        session_id: str,
        *,
        reason: EndReason = EndReason.USER_ENDED,
        idempotency_key: Optional[str] = None,
    ) -> Session:
        """Move an active session to ``ended``; ``principal=None`` means the system."""

        session = await self._sessions.get(session_id)
        if principal is not None:
            self._require_participant(principal, session)
        return await self._transition(
            session,
            SessionStatus.ACTIVE,
            SessionStatus.ENDED,
            {"ended_at": self._clock(), "end_reason": reason.value},
            idempotency_key=idempotency_key,
        )

    async def end_insufficient_funds(self, session_id: str) -> Session:
        session = await self._sessions.get(session_id)
        return await self._transition(
            session,
            SessionStatus.ACTIVE,
            SessionStatus.ENDED_INSUFFICIENT_FUNDS,
            {"ended_at": self._clock(), "end_reason": EndReason.INSUFFICIENT_FUNDS.value},
            idempotency_key=f"{session_id}:insufficient_funds",
        )

    async def cancel(self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None) -> Session:
        session = await self._sessions.get(session_id)
        if principal.user_id == session.client_id:
            reason = EndReason.WITHDRAWN
        elif principal.user_id == session.reader_id:
            reason = EndReason.READER_UNAVAILABLE
        else:
            raise Forbidden(f"{principal.user_id} cannot cancel {session_id}")
        return await self._transition(
            session,
            SessionStatus.REQUESTED,
            SessionStatus.CANCELLED,
            {"ended_at": self._clock(), "end_reason": reason.value},
            idempotency_key=idempotency_key,
        )

    async def _transition(
        self,
        session: Session,
        expected: SessionStatus,
        target: SessionStatus,
        extra_fields: Mapping[str, Any],
        *,
        idempotency_key: Optional[str],
    ) -> Session:
        if target not in ALLOWED_TRANSITIONS.get(expected, frozenset()):
            raise ValueError(f"{expected.value} -> {target.value} is not a session transition")
        session_id = session.session_id
        if session.status == expected:
            updated = await self._sessions.compare_and_swap_status(
                session_id,
                expected,
                target,
                extra_fields,
                idempotency_key=idempotency_key,
            )
            if updated is not None:
                logger.info("Session %s: %s -> %s", session_id, expected.value, target.value)
                return updated
            # Lost the race; judge against what the winner wrote.
            session = await self._sessions.get(session_id)

        if (
            session.status == target
            and idempotency_key is not None
            and session.applied_keys.get(target.value) == idempotency_key
        ):
            logger.debug("Session %s already %s (key %s)", session_id, target.value, idempotency_key)
            return session

        if session.status.is_terminal:
            logger.warning(
                "Rejected %s -> %s for session %s: status is terminal",
                session.status.value,
                target.value,
                session_id,
            )
        raise InvalidState(
            f"Session {session_id} is {session.status.value}; expected {expected.value} to move to {target.value}"
        )

    @staticmethod
    def _require_participant(principal: Principal, session: Session) -> None:
        if not session.is_participant(principal.user_id):
            raise Forbidden(f"{principal.user_id} is not a participant of {session.session_id}")
