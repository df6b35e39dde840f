from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Dict

from shared.errors import LiveSessionError
from shared.protocol import DEFAULT_SIGNAL_PORT, CallStatus, ChatMessage, ClientIdentity

from .call import CallSession
from .chat_relay import ChatNotice


def _print(line: str) -> None:
    print(line, flush=True)


async def _handle_command(call: CallSession, line: str) -> bool:
    """Apply one line of user input; returns ``False`` when the user leaves."""

    command, _, argument = line.strip().partition(" ")
    if command in ("/quit", "/end"):
        await call.hang_up()
        return False
    if command == "/video":
        await call.set_video_enabled(argument.strip().lower() != "off")
    elif command == "/mute":
        await call.set_audio_enabled(False)
    elif command == "/unmute":
        await call.set_audio_enabled(True)
    elif command == "/status":
        _print(f"* call {call.status.value}, session {call.session.get('status')}")
        if call.billing:
            _print(f"* billed {call.billing['billed_minutes']} min, {call.billing['remaining_minutes']} min left")
    elif line.strip():
        await call.send_chat(line)
    return True


async def run(args: argparse.Namespace) -> CallStatus:
    def on_status(status: CallStatus) -> None:
        _print(f"* {status.value.replace('_', ' ')}")

    def on_chat(message: ChatMessage) -> None:
        if not message.is_own:
            _print(f"<{message.sender_name}> {message.text}")

    def on_notice(notice: ChatNotice) -> None:
        _print(f"* {notice.text}")

    def on_billing(update: Dict[str, object]) -> None:
        _print(f"* charged {update['charge']} (balance {update['balance']}, {update['remaining_minutes']} min left)")

    def on_error(payload: Dict[str, object]) -> None:
        _print(f"! {payload.get('code')}: {payload.get('reason')}")

    identity = ClientIdentity(user_id=args.user, role=args.role, session_id=args.session)
    call = CallSession(
        identity,
        display_name=args.name,
        server_host=args.server_host,
        signal_port=args.signal_port,
        on_status=on_status,
        on_chat=on_chat,
        on_notice=on_notice,
        on_billing=on_billing,
        on_error=on_error,
    )
    await call.run()

    loop = asyncio.get_running_loop()
    stdin = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stdin), sys.stdin)

    ended = asyncio.create_task(call.wait_ended())
    while not ended.done():
        read = asyncio.create_task(stdin.readline())
        done, _ = await asyncio.wait({read, ended}, return_when=asyncio.FIRST_COMPLETED)
        if read not in done:
            read.cancel()
            break
        line = read.result().decode("utf-8", errors="replace")
        if not line:
            await call.hang_up()
            break
        try:
            if not await _handle_command(call, line):
                break
        except (LiveSessionError, ValueError) as exc:
            _print(f"! {exc}")
    return await ended


def main() -> None:
    parser = argparse.ArgumentParser(description="Live reading session terminal client")
    parser.add_argument("server_host", help="Hostname or IP of the session server")
    parser.add_argument("--signal-port", type=int, default=DEFAULT_SIGNAL_PORT, help="Server signaling port")
    parser.add_argument("--session", required=True, help="Session id to join")
    parser.add_argument("--user", required=True, help="Your user id")
    parser.add_argument("--role", choices=["client", "reader"], default="client", help="Your role in the session")
    parser.add_argument("--name", help="Display name shown in chat")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    status = asyncio.run(run(args))
    sys.exit(0 if status == CallStatus.ENDED else 1)


if __name__ == "__main__":
    main()
