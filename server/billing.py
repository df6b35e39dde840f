from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from shared.errors import InsufficientFunds, InvalidState
from shared.models import SessionStatus
from shared.money import charge_for_seconds, remaining_minutes, seconds_to_minutes
from shared.protocol import DEFAULT_TICK_SECONDS

from .store import BalanceStore, SessionStore

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    CHARGED = "charged"
    IDLE = "idle"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    STOPPED = "stopped"


@dataclass(slots=True)
class BillingUpdate:
    """Result of one committed billing tick."""

    session_id: str
    rate_per_minute: Decimal
    charge: Decimal
    balance: Decimal
    billed_seconds: int
    amount_charged: Decimal
    final: bool = False

    @property
    def remaining_minutes(self) -> Decimal:
        return remaining_minutes(self.balance, self.rate_per_minute)

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "rate_per_minute": str(self.rate_per_minute),
            "charge": str(self.charge),
            "balance": str(self.balance),
            "billed_seconds": self.billed_seconds,
            "billed_minutes": str(seconds_to_minutes(self.billed_seconds)),
            "amount_charged": str(self.amount_charged),
            "remaining_minutes": str(self.remaining_minutes),
            "final": self.final,
        }


UpdateCallback = Callable[[BillingUpdate], Awaitable[None] | None]
InsufficientFundsCallback = Callable[[str], Awaitable[None] | None]


class BillingLoop:
    """Debits the client's balance while a session is active.

    Billable time comes from a monotonic clock and is floored to whole
    seconds; each tick bills the gap between that position and the billed
    seconds recorded in the store, so an interval is never billed twice even
    across retries. Every tick re-reads the session and does nothing unless it
    is still ``active``.
    """

    def __init__(
        self,
        session_id: str,
        sessions: SessionStore,
        balances: BalanceStore,
        *,
        interval: float = DEFAULT_TICK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        on_update: Optional[UpdateCallback] = None,
        on_insufficient_funds: Optional[InsufficientFundsCallback] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._session_id = session_id
        self._sessions = sessions
        self._balances = balances
        self._interval = interval
        self._clock = clock
        self._on_update = on_update
        self._on_insufficient_funds = on_insufficient_funds
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._started_at: Optional[float] = None
        self._offset_seconds = 0
        self._held_at: Optional[float] = None
        self._paused_seconds = 0.0
        self._stopped = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def running(self) -> bool:
        return self._started_at is not None and not self._stopped

    async def start(self) -> None:
        if self._started_at is not None:
            raise InvalidState(f"Billing for {self._session_id} already started")
        session = await self._sessions.get(self._session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidState(f"Cannot bill session {self._session_id} in status {session.status.value}")
        # Seconds billed by an earlier loop (e.g. before a restart) stay billed.
        self._offset_seconds = session.billed_seconds
        self._started_at = self._clock()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Billing started for %s at %s/min every %.0fs",
            self._session_id,
            session.rate_per_minute,
            self._interval,
        )

    @property
    def held(self) -> bool:
        return self._held_at is not None

    def hold(self, at: Optional[float] = None) -> None:
        """Freeze billable time at ``at`` until ``resume`` is called.

        Ticks that fire while held bill nothing past that reading. A second
        hold keeps the earlier reading.
        """

        if self._held_at is not None:
            return
        self._held_at = self._clock() if at is None else at
        logger.info("Billing for %s held", self._session_id)

    def resume(self) -> None:
        """Lift a hold; the time spent held is never billed."""

        if self._held_at is None:
            return
        self._paused_seconds += max(0.0, self._clock() - self._held_at)
        self._held_at = None
        logger.info("Billing for %s resumed", self._session_id)

    def billable_seconds(self, until: Optional[float] = None) -> int:
        if self._started_at is None:
            return self._offset_seconds
        now = self._clock()
        if until is not None:
            now = min(now, until)
        if self._held_at is not None:
            now = min(now, self._held_at)
        return self._offset_seconds + int(max(0.0, now - self._started_at - self._paused_seconds))

    async def tick(self) -> TickOutcome:
        async with self._lock:
            if self._started_at is None:
                raise InvalidState(f"Billing for {self._session_id} has not started")
            if self._stopped:
                return TickOutcome.STOPPED
            outcome = await self._tick_locked(until=None, final=False)
        if outcome == TickOutcome.INSUFFICIENT_FUNDS and self._on_insufficient_funds is not None:
            result = self._on_insufficient_funds(self._session_id)
            if asyncio.iscoroutine(result):
                await result
        return outcome

    async def stop(self, *, settle: bool = True, until: Optional[float] = None) -> Optional[TickOutcome]:
        """Cancel the timer, then optionally bill the final partial interval.

        ``until`` caps the settlement at a clock reading (the moment a
        participant dropped). Safe to call from inside the loop's own task.
        """

        current = asyncio.current_task()
        outcome: Optional[TickOutcome] = None
        async with self._lock:
            already_stopped = self._stopped
            self._stopped = True
            task, self._task = self._task, None
            if task is not None and task is not current:
                task.cancel()
            if settle and not already_stopped and self._started_at is not None:
                outcome = await self._tick_locked(until=until, final=True)
                if outcome == TickOutcome.INSUFFICIENT_FUNDS:
                    logger.warning(
                        "Final settlement for %s exceeds the client's balance; left unbilled",
                        self._session_id,
                    )
        if task is not None and task is not current:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Billing stopped for %s (settle=%s, outcome=%s)", self._session_id, settle, outcome)
        return outcome

    async def status(self) -> Dict[str, object]:
        session = await self._sessions.get(self._session_id)
        balance = await self._balances.get_balance(session.client_id)
        return {
            "session_id": self._session_id,
            "status": session.status.value,
            "running": self.running,
            "held": self.held,
            "rate_per_minute": str(session.rate_per_minute),
            "billed_seconds": session.billed_seconds,
            "billed_minutes": str(session.billed_minutes),
            "amount_charged": str(session.amount_charged),
            "billable_seconds": self.billable_seconds(),
            "balance": str(balance),
            "remaining_minutes": str(remaining_minutes(balance, session.rate_per_minute)),
        }

    async def _run(self) -> None:
        try:
            while not self._stopped:
                await asyncio.sleep(self._interval)
                if self._stopped:
                    break
                outcome = await self.tick()
                if outcome in (TickOutcome.INSUFFICIENT_FUNDS, TickOutcome.STOPPED):
                    break
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Billing loop for %s failed", self._session_id)

    async def _tick_locked(self, *, until: Optional[float], final: bool) -> TickOutcome:
        session = await self._sessions.get(self._session_id)
        if session.status != SessionStatus.ACTIVE:
            self._stopped = True
            return TickOutcome.STOPPED

        target_seconds = self.billable_seconds(until)
        delta_seconds = target_seconds - session.billed_seconds
        if delta_seconds <= 0:
            return TickOutcome.IDLE

        new_total = charge_for_seconds(session.rate_per_minute, target_seconds)
        charge = new_total - session.amount_charged
        if charge > 0:
            try:
                balance = await self._balances.debit(session.client_id, charge)
            except InsufficientFunds:
                logger.warning(
                    "Session %s: charge %s for %ss exceeds balance of %s",
                    self._session_id,
                    charge,
                    delta_seconds,
                    session.client_id,
                )
                if not final:
                    self._stopped = True
                return TickOutcome.INSUFFICIENT_FUNDS
        else:
            balance = await self._balances.get_balance(session.client_id)

        updated = await self._sessions.increment_billing(self._session_id, delta_seconds, charge)
        if updated is None:
            # Session turned terminal between the debit and the write.
            if charge > 0:
                await self._balances.credit(session.client_id, charge)
            self._stopped = True
            return TickOutcome.STOPPED

        logger.debug(
            "Session %s billed %ss for %s (total %s, balance %s)",
            self._session_id,
            delta_seconds,
            charge,
            updated.amount_charged,
            balance,
        )
        await self._notify(
            BillingUpdate(
                session_id=self._session_id,
                rate_per_minute=updated.rate_per_minute,
                charge=charge,
                balance=balance,
                billed_seconds=updated.billed_seconds,
                amount_charged=updated.amount_charged,
                final=final,
            )
        )
        return TickOutcome.CHARGED

    async def _notify(self, update: BillingUpdate) -> None:
        if self._on_update is None:
            return
        try:
            result = self._on_update(update)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Billing update callback failed for %s", self._session_id)
