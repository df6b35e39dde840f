from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from shared.errors import ChannelUnavailable, MalformedMessage
from shared.protocol import ChatMessage, new_message_id, utc_now_iso

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


class ChannelEvent(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    CLOSE = "close"
    ERROR = "error"


class ChatChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(slots=True)
class ChatNotice:
    """User-visible notice about the chat channel."""

    level: str
    text: str
    timestamp: str = field(default_factory=utc_now_iso)


MessageListener = Callable[[ChatMessage], Awaitable[None] | None]
NoticeListener = Callable[[ChatNotice], Awaitable[None] | None]


class ChatRelay:
    """Text chat over the session's ordered ``chat`` data channel.

    ``handle_event`` is the one entry point for channel activity; ``attach``
    routes an aiortc channel's callbacks to it.
    """

    def __init__(
        self,
        user_id: str,
        display_name: str,
        *,
        on_message: Optional[MessageListener] = None,
        on_notice: Optional[NoticeListener] = None,
    ) -> None:
        self._user_id = user_id
        self._display_name = display_name
        self._on_message = on_message
        self._on_notice = on_notice
        self._channel: Any = None
        self._state = ChatChannelState.CONNECTING
        self._messages: List[ChatMessage] = []
        self._notices: List[ChatNotice] = []

    @property
    def state(self) -> ChatChannelState:
        return self._state

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def notices(self) -> List[ChatNotice]:
        return list(self._notices)

    def attach(self, channel: Any) -> None:
        self._channel = channel

        @channel.on("open")
        async def on_open() -> None:
            await self.handle_event(ChannelEvent.OPEN)

        @channel.on("message")
        async def on_message(data) -> None:
            await self.handle_event(ChannelEvent.MESSAGE, data)

        @channel.on("close")
        async def on_close() -> None:
            await self.handle_event(ChannelEvent.CLOSE)

        @channel.on("error")
        async def on_error(error) -> None:
            await self.handle_event(ChannelEvent.ERROR, error)

        # The answering side receives channels that are already open
        if getattr(channel, "readyState", None) == "open":
            asyncio.ensure_future(self.handle_event(ChannelEvent.OPEN))

    async def handle_event(self, kind: ChannelEvent | str, payload: Any = None) -> None:
        kind = ChannelEvent(kind)
        if kind == ChannelEvent.OPEN:
            if self._state == ChatChannelState.OPEN:
                return
            self._state = ChatChannelState.OPEN
            await self._notify("success", "Chat connected")
        elif kind == ChannelEvent.MESSAGE:
            await self._receive(payload)
        elif kind == ChannelEvent.CLOSE:
            if self._state == ChatChannelState.CLOSED:
                return
            self._state = ChatChannelState.CLOSED
            await self._notify("info", "Chat disconnected")
        elif kind == ChannelEvent.ERROR:
            self._state = ChatChannelState.ERROR
            logger.warning("Chat channel error: %s", payload)
            await self._notify("error", "Chat error")

    async def send(self, text: str) -> ChatMessage:
        """Send a message to the peer and echo it locally as our own."""

        text = text.strip()
        if not text:
            raise ValueError("Cannot send an empty message")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
        channel = self._channel
        if (
            channel is None
            or self._state != ChatChannelState.OPEN
            or getattr(channel, "readyState", "open") != "open"
        ):
            raise ChannelUnavailable("Chat channel is not open")
        message = ChatMessage(
            id=new_message_id(),
            sender_id=self._user_id,
            sender_name=self._display_name,
            text=text,
            timestamp=utc_now_iso(),
            is_own=True,
        )
        channel.send(message.to_json())
        self._messages.append(message)
        await self._emit(message)
        return message

    async def _receive(self, payload: Any) -> None:
        try:
            message = ChatMessage.from_json(payload)
        except MalformedMessage as exc:
            logger.warning("Dropping malformed chat payload: %s", exc)
            await self._notify("warning", "Received an unreadable chat message")
            return
        message.is_own = message.sender_id == self._user_id
        self._messages.append(message)
        await self._emit(message)

    async def _emit(self, message: ChatMessage) -> None:
        if self._on_message is None:
            return
        try:
            result = self._on_message(message)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Chat message listener failed")

    async def _notify(self, level: str, text: str) -> None:
        notice = ChatNotice(level=level, text=text)
        self._notices.append(notice)
        if self._on_notice is None:
            return
        try:
            result = self._on_notice(notice)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Chat notice listener failed")
