from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from shared.errors import Forbidden, InvalidState, LiveSessionError, SessionNotFound
from shared.models import EndReason, Principal, Session, SessionMode, SessionStatus
from shared.money import remaining_minutes
from shared.protocol import DEFAULT_GRACE_SECONDS, DEFAULT_TICK_SECONDS, SignalAction

from .billing import BillingLoop, BillingUpdate
from .call_state import CallStateMachine
from .signaling import RoomEvent, SignalingHub
from .store import BalanceStore, SessionStore, UserDirectory

logger = logging.getLogger(__name__)


class SessionManager:
    """Coordinates live sessions: transitions, billing loops, rooms and teardown."""

    def __init__(
        self,
        sessions: SessionStore,
        balances: BalanceStore,
        users: UserDirectory,
        hub: SignalingHub,
        *,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        billing_clock: Callable[[], float] = time.monotonic,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = sessions
        self._balances = balances
        self._hub = hub
        self._machine = CallStateMachine(sessions, balances, users, clock=clock)
        self._tick_seconds = tick_seconds
        self._grace_seconds = grace_seconds
        self._billing_clock = billing_clock
        self._lock = asyncio.Lock()
        self._billing: Dict[str, BillingLoop] = {}
        self._grace_tasks: Dict[Tuple[str, str], asyncio.Task[None]] = {}
        self._teardowns: Dict[str, asyncio.Task[Session]] = {}
        self._event_log: list[dict] = []
        self._hub.subscribe(None, self._on_room_event)

    @property
    def machine(self) -> CallStateMachine:
        return self._machine

    async def get_session(self, session_id: str) -> Session:
        return await self._sessions.get(session_id)

    async def authorize_join(self, principal: Principal, session_id: str) -> Session:
        session = await self._sessions.get(session_id)
        if not session.is_participant(principal.user_id):
            raise Forbidden(f"{principal.user_id} is not a participant of {session_id}")
        if session.status.is_terminal:
            raise InvalidState(f"Session {session_id} is {session.status.value}")
        return session

    async def request_session(
        self,
        principal: Principal,
        reader_id: str,
        mode: SessionMode,
        *,
        notes: str = "",
    ) -> Session:
        session = await self._machine.request(principal, reader_id, mode, notes=notes)
        self._record_event(
            "session_requested",
            {"session_id": session.session_id, "client_id": session.client_id, "reader_id": session.reader_id},
        )
        return session

    async def accept_session(
        self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None
    ) -> Session:
        session = await self._machine.accept(principal, session_id, idempotency_key=idempotency_key)
        self._record_event("session_accepted", {"session_id": session_id, "actor": principal.user_id})
        await self._broadcast_status(session)
        return session

    async def start_session(
        self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None
    ) -> Session:
        session = await self._machine.start(principal, session_id, idempotency_key=idempotency_key)
        async with self._lock:
            ending = session_id in self._teardowns
            if not ending and session_id not in self._billing:
                try:
                    await self._start_billing_locked(session_id)
                except InvalidState as exc:
                    # Ended between the transition and taking the lock.
                    logger.info("Not billing %s: %s", session_id, exc)
                else:
                    self._record_event("session_started", {"session_id": session_id, "actor": principal.user_id})
        if not ending:
            await self._broadcast_status(session)
        return session

    async def start_billing(self, session_id: str) -> BillingLoop:
        """Start the single billing loop of an active session; a second attempt is rejected."""

        async with self._lock:
            if session_id in self._billing:
                raise InvalidState(f"Billing for {session_id} is already running")
            if session_id in self._teardowns:
                raise InvalidState(f"Session {session_id} is ending")
            return await self._start_billing_locked(session_id)

    async def cancel_session(
        self, principal: Principal, session_id: str, *, idempotency_key: Optional[str] = None
    ) -> Session:
        session = await self._machine.cancel(principal, session_id, idempotency_key=idempotency_key)
        self._record_event(
            "session_cancelled",
            {"session_id": session_id, "actor": principal.user_id, "reason": session.end_reason},
        )
        await self._broadcast_status(session)
        await self._hub.close_room(session_id)
        return session

    async def end_session(
        self,
        session_id: str,
        *,
        principal: Optional[Principal] = None,
        reason: EndReason = EndReason.USER_ENDED,
        status: SessionStatus = SessionStatus.ENDED,
        settle_until: Optional[float] = None,
    ) -> Session:
        """Stop billing, write the terminal status once and close the room.

        Concurrent or repeated calls share the same teardown and observe the
        same result.
        """

        if status not in (SessionStatus.ENDED, SessionStatus.ENDED_INSUFFICIENT_FUNDS):
            raise ValueError(f"{status.value} is not an end status")
        session = await self._sessions.get(session_id)
        if principal is not None and not session.is_participant(principal.user_id):
            raise Forbidden(f"{principal.user_id} is not a participant of {session_id}")
        async with self._lock:
            task = self._teardowns.get(session_id)
            if task is None:
                if session.status.is_terminal:
                    return session
                if session.status != SessionStatus.ACTIVE:
                    raise InvalidState(f"Session {session_id} is {session.status.value}, not active")
                task = asyncio.create_task(
                    self._teardown(session_id, principal, reason, status, settle_until)
                )
                self._teardowns[session_id] = task
        return await asyncio.shield(task)

    async def participant_left(self, session_id: str, user_id: str) -> None:
        try:
            session = await self._sessions.get(session_id)
        except SessionNotFound:
            return
        if session.status != SessionStatus.ACTIVE:
            return
        key = (session_id, user_id)
        if key in self._grace_tasks:
            return
        left_at = self._billing_clock()
        loop = self._billing.get(session_id)
        if loop is not None:
            loop.hold(left_at)
        self._grace_tasks[key] = asyncio.create_task(self._grace_expired(session_id, user_id, left_at))
        self._record_event("participant_left", {"session_id": session_id, "user_id": user_id})
        logger.info("%s left active session %s; ending in %.0fs unless they return", user_id, session_id, self._grace_seconds)

    async def participant_joined(self, session_id: str, user_id: str) -> None:
        task = self._grace_tasks.pop((session_id, user_id), None)
        if task is None:
            return
        task.cancel()
        loop = self._billing.get(session_id)
        if loop is not None and not any(key[0] == session_id for key in self._grace_tasks):
            loop.resume()
        self._record_event("participant_rejoined", {"session_id": session_id, "user_id": user_id})
        logger.info("%s rejoined session %s within the grace window", user_id, session_id)

    async def billing_status(self, principal: Principal, session_id: str) -> Dict[str, object]:
        session = await self._sessions.get(session_id)
        if not session.is_participant(principal.user_id):
            raise Forbidden(f"{principal.user_id} is not a participant of {session_id}")
        loop = self._billing.get(session_id)
        if loop is not None:
            return await loop.status()
        balance = await self._balances.get_balance(session.client_id)
        return {
            "session_id": session_id,
            "status": session.status.value,
            "running": False,
            "held": False,
            "rate_per_minute": str(session.rate_per_minute),
            "billed_seconds": session.billed_seconds,
            "billed_minutes": str(session.billed_minutes),
            "amount_charged": str(session.amount_charged),
            "billable_seconds": session.billed_seconds,
            "balance": str(balance),
            "remaining_minutes": str(remaining_minutes(balance, session.rate_per_minute)),
        }

    def is_billing(self, session_id: str) -> bool:
        return session_id in self._billing

    async def recover(self) -> int:
        """Re-attach sessions a previous process left ``active``.

        Each one gets a fresh billing loop that resumes from its billed
        seconds, held until both participants are back. A participant who
        does not reconnect within the grace window ends the session as a
        disconnect, so nothing stays active without a running loop.
        """

        active = await self._sessions.list_sessions(SessionStatus.ACTIVE)
        recovered = 0
        for session in active:
            async with self._lock:
                if session.session_id in self._billing or session.session_id in self._teardowns:
                    continue
                try:
                    await self._start_billing_locked(session.session_id)
                except InvalidState as exc:
                    logger.warning("Could not recover %s: %s", session.session_id, exc)
                    continue
            members = set(self._hub.members(session.session_id))
            for user_id in (session.client_id, session.reader_id):
                if user_id not in members:
                    await self.participant_left(session.session_id, user_id)
            self._record_event(
                "session_recovered",
                {"session_id": session.session_id, "billed_seconds": session.billed_seconds},
            )
            recovered += 1
        if recovered:
            logger.info("Recovered %d active session(s); waiting for participants to reconnect", recovered)
        return recovered

    async def end_all(self, *, reason: EndReason = EndReason.SERVER_SHUTDOWN) -> int:
        active = await self._sessions.list_sessions(SessionStatus.ACTIVE)
        results = await asyncio.gather(
            *(self.end_session(session.session_id, reason=reason) for session in active),
            return_exceptions=True,
        )
        for session, result in zip(active, results):
            if isinstance(result, Exception):
                logger.error("Failed to end session %s during shutdown: %s", session.session_id, result)
        return len(active)

    async def snapshot(self) -> dict:
        active = await self._sessions.list_sessions(SessionStatus.ACTIVE)
        return {
            "active_sessions": [session.to_dict() for session in active],
            "active_count": len(active),
            "billing_loops": sorted(self._billing),
            "pending_grace": [f"{sid}:{uid}" for sid, uid in self._grace_tasks],
            "events": list(self._event_log[-300:]),
        }

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return list(self._event_log[-limit:])

    async def _start_billing_locked(self, session_id: str) -> BillingLoop:
        loop = BillingLoop(
            session_id,
            self._sessions,
            self._balances,
            interval=self._tick_seconds,
            clock=self._billing_clock,
            on_update=self._on_billing_update,
            on_insufficient_funds=self._on_insufficient_funds,
        )
        await loop.start()
        self._billing[session_id] = loop
        return loop

    async def _teardown(
        self,
        session_id: str,
        principal: Optional[Principal],
        reason: EndReason,
        status: SessionStatus,
        settle_until: Optional[float],
    ) -> Session:
        async with self._lock:
            loop = self._billing.pop(session_id, None)
        self._cancel_grace(session_id)
        if loop is not None:
            await loop.stop(settle=status == SessionStatus.ENDED, until=settle_until)
        try:
            if status == SessionStatus.ENDED_INSUFFICIENT_FUNDS:
                session = await self._machine.end_insufficient_funds(session_id)
            else:
                session = await self._machine.end(
                    None, session_id, reason=reason, idempotency_key=f"{session_id}:end"
                )
        except InvalidState:
            session = await self._sessions.get(session_id)
            if not session.status.is_terminal:
                raise
            logger.info("Session %s was already %s", session_id, session.status.value)
        self._record_event(
            "session_ended",
            {
                "session_id": session_id,
                "status": session.status.value,
                "reason": session.end_reason,
                "actor": principal.user_id if principal else "system",
                "billed_seconds": session.billed_seconds,
                "amount_charged": str(session.amount_charged),
            },
        )
        await self._broadcast_status(session)
        await self._hub.close_room(session_id)
        return session

    async def _grace_expired(self, session_id: str, user_id: str, left_at: float) -> None:
        try:
            await asyncio.sleep(self._grace_seconds)
        except asyncio.CancelledError:
            return
        self._grace_tasks.pop((session_id, user_id), None)
        logger.info("%s did not return to %s; ending session", user_id, session_id)
        try:
            await self.end_session(session_id, reason=EndReason.PEER_DISCONNECTED, settle_until=left_at)
        except asyncio.CancelledError:
            return
        except LiveSessionError as exc:
            logger.warning("Could not end %s after disconnect: %s", session_id, exc)

    def _cancel_grace(self, session_id: str) -> None:
        current = asyncio.current_task()
        for key in [key for key in self._grace_tasks if key[0] == session_id]:
            task = self._grace_tasks.pop(key)
            if task is not current:
                task.cancel()

    async def _on_room_event(self, event: RoomEvent) -> None:
        if event.kind == "left":
            await self.participant_left(event.room_id, event.user_id)
        elif event.kind == "joined":
            await self.participant_joined(event.room_id, event.user_id)

    async def _on_billing_update(self, update: BillingUpdate) -> None:
        await self._hub.send(update.session_id, SignalAction.BILLING_UPDATE, update.to_dict())

    async def _on_insufficient_funds(self, session_id: str) -> None:
        self._record_event("insufficient_funds", {"session_id": session_id})
        await self.end_session(
            session_id,
            reason=EndReason.INSUFFICIENT_FUNDS,
            status=SessionStatus.ENDED_INSUFFICIENT_FUNDS,
        )

    async def _broadcast_status(self, session: Session) -> None:
        await self._hub.send(session.session_id, SignalAction.SESSION_STATUS, {"session": session.to_dict()})

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > 1000:
            self._event_log.pop(0)
