from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, Optional, Protocol, Set

from shared.protocol import SignalAction, SignalEnvelope, build_envelope, encode_envelope

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds
DEDUPE_WINDOW = 512


class SignalPeer(Protocol):
    user_id: str
    role: str
    last_seen: float

    def touch(self) -> None: ...

    async def deliver(self, envelope: SignalEnvelope) -> None: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class TcpPeer:
    """Room member connected over the length-prefixed TCP transport."""

    user_id: str
    role: str
    writer: asyncio.StreamWriter
    last_seen: float = field(default_factory=lambda: time.monotonic())
    bytes_sent: int = 0

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def deliver(self, envelope: SignalEnvelope) -> None:
        payload = encode_envelope(envelope)
        self.bytes_sent += len(payload)
        self.writer.write(payload)
        await self.writer.drain()

    async def close(self) -> None:
        try:
            self.writer.close()
        except Exception:  # pragma: no cover - cleanup best effort
            logger.exception("Error while closing writer for %s", self.user_id)


@dataclass(frozen=True, slots=True)
class RoomEvent:
    kind: str  # "joined" | "left"
    room_id: str
    user_id: str


RoomHandler = Callable[[RoomEvent], Awaitable[None] | None]


class SignalingHub:
    """One logical room per session; relays envelopes between its members.

    Delivery is at-least-once upstream, so every envelope id seen in a room
    is remembered (bounded) and repeats are dropped.
    """

    def __init__(self, *, dedupe_window: int = DEDUPE_WINDOW) -> None:
        self._rooms: Dict[str, Dict[str, SignalPeer]] = {}
        self._seen_order: Dict[str, Deque[str]] = {}
        self._seen: Dict[str, Set[str]] = {}
        self._subscribers: Dict[Optional[str], list[RoomHandler]] = {}
        self._dedupe_window = max(1, dedupe_window)
        self._lock = asyncio.Lock()

    def subscribe(self, room_id: Optional[str], handler: RoomHandler) -> Callable[[], None]:
        """Register for join/leave events of ``room_id`` (``None`` for every room)."""

        handlers = self._subscribers.setdefault(room_id, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    async def join(self, room_id: str, peer: SignalPeer) -> list[str]:
        async with self._lock:
            members = self._rooms.setdefault(room_id, {})
            previous = members.get(peer.user_id)
            members[peer.user_id] = peer
            others = [user_id for user_id in members if user_id != peer.user_id]
        if previous is not None and previous is not peer:
            logger.info("Replacing stale connection of %s in room %s", peer.user_id, room_id)
            await previous.close()
        logger.info("%s joined room %s", peer.user_id, room_id)
        await self.send(
            room_id,
            SignalAction.PEER_JOINED,
            {"user_id": peer.user_id, "role": peer.role},
            exclude={peer.user_id},
        )
        await self._notify(RoomEvent("joined", room_id, peer.user_id))
        return others

    async def leave(self, room_id: str, user_id: str, peer: Optional[SignalPeer] = None) -> bool:
        """Remove a member; with ``peer`` given only that exact connection is removed."""

        async with self._lock:
            members = self._rooms.get(room_id)
            if not members or user_id not in members:
                return False
            if peer is not None and members[user_id] is not peer:
                return False
            members.pop(user_id)
        logger.info("%s left room %s", user_id, room_id)
        await self.send(room_id, SignalAction.PEER_LEFT, {"user_id": user_id})
        await self._notify(RoomEvent("left", room_id, user_id))
        return True

    async def send(
        self,
        room_id: str,
        action: SignalAction,
        data: Dict[str, object],
        *,
        exclude: Optional[Set[str]] = None,
        message_id: Optional[str] = None,
    ) -> int:
        envelope = build_envelope(action, data, message_id=message_id)
        self._remember(room_id, envelope["message_id"])
        return await self._deliver(room_id, envelope, exclude or set())

    async def relay(self, room_id: str, sender_id: str, envelope: SignalEnvelope) -> bool:
        """Forward a member's envelope to the rest of the room; ``False`` for duplicates."""

        if self.is_duplicate(room_id, envelope["message_id"]):
            logger.debug("Dropping duplicate %s %s in room %s", envelope["action"], envelope["message_id"], room_id)
            return False
        data = dict(envelope["data"])
        data["from"] = sender_id
        forwarded: SignalEnvelope = {
            "action": envelope["action"],
            "message_id": envelope["message_id"],
            "data": data,
        }
        await self._deliver(room_id, forwarded, {sender_id})
        return True

    def is_duplicate(self, room_id: str, message_id: str) -> bool:
        """Record ``message_id`` and report whether it was already seen."""

        seen = self._seen.setdefault(room_id, set())
        if message_id in seen:
            return True
        self._remember(room_id, message_id)
        return False

    def touch(self, room_id: str, user_id: str) -> None:
        peer = self._rooms.get(room_id, {}).get(user_id)
        if peer is not None:
            peer.touch()

    def members(self, room_id: str) -> list[str]:
        return list(self._rooms.get(room_id, {}))

    async def close_room(self, room_id: str) -> None:
        async with self._lock:
            members = self._rooms.pop(room_id, {})
            self._seen.pop(room_id, None)
            self._seen_order.pop(room_id, None)
        for peer in members.values():
            await peer.close()
        if members:
            logger.info("Closed room %s (%s members)", room_id, len(members))

    async def heartbeat_watcher(self) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_TIMEOUT)
            now = time.monotonic()
            stale: list[tuple[str, SignalPeer]] = []
            async with self._lock:
                for room_id, members in self._rooms.items():
                    for peer in members.values():
                        if now - peer.last_seen > HEARTBEAT_TIMEOUT * 2:
                            stale.append((room_id, peer))
            for room_id, peer in stale:
                logger.warning("%s timed out in room %s", peer.user_id, room_id)
                if await self.leave(room_id, peer.user_id, peer):
                    await peer.close()

    def _remember(self, room_id: str, message_id: str) -> None:
        order = self._seen_order.setdefault(room_id, deque())
        seen = self._seen.setdefault(room_id, set())
        if message_id in seen:
            return
        order.append(message_id)
        seen.add(message_id)
        while len(order) > self._dedupe_window:
            seen.discard(order.popleft())

    async def _deliver(self, room_id: str, envelope: SignalEnvelope, exclude: Set[str]) -> int:
        async with self._lock:
            targets = [
                peer for user_id, peer in self._rooms.get(room_id, {}).items() if user_id not in exclude
            ]
        results = await asyncio.gather(*(peer.deliver(envelope) for peer in targets), return_exceptions=True)
        delivered = 0
        for peer, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Failed to deliver %s to %s: %s", envelope["action"], peer.user_id, result)
            else:
                delivered += 1
        return delivered

    async def _notify(self, event: RoomEvent) -> None:
        handlers = list(self._subscribers.get(event.room_id, [])) + list(self._subscribers.get(None, []))
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Room handler failed for %s", event)
