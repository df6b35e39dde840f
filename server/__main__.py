from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from shared.protocol import (
    DEFAULT_API_PORT,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_SIGNAL_PORT,
    DEFAULT_TICK_SECONDS,
)

from server.api import ApiServer
from server.session_manager import SessionManager
from server.signaling import SignalingHub
from server.signaling_server import SignalingServer
from server.store import (
    InMemoryBalanceStore,
    InMemorySessionStore,
    InMemoryUserDirectory,
    JsonFileSessionStore,
    load_seed,
)

logger = logging.getLogger(__name__)


def _configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main() -> None:
    parser = argparse.ArgumentParser(description="Live reading session server")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the signaling server")
    parser.add_argument("--signal-port", type=int, default=DEFAULT_SIGNAL_PORT, help="TCP signaling port")
    parser.add_argument("--api-host", default="127.0.0.1", help="Host for the HTTP/WebSocket API")
    parser.add_argument("--api-port", type=int, default=DEFAULT_API_PORT, help="Port for the HTTP/WebSocket API")
    parser.add_argument(
        "--tick-seconds",
        type=float,
        default=DEFAULT_TICK_SECONDS,
        help="Seconds between billing ticks",
    )
    parser.add_argument(
        "--grace-seconds",
        type=float,
        default=DEFAULT_GRACE_SECONDS,
        help="How long a dropped participant may take to reconnect before the session ends",
    )
    parser.add_argument(
        "--store-path",
        type=Path,
        default=None,
        help="JSON file for session records (in-memory when omitted)",
    )
    parser.add_argument("--seed", type=Path, default=None, help="JSON file with users and balances")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    _configure_logging(args)

    if args.tick_seconds <= 0:
        parser.error("--tick-seconds must be positive")
    if args.grace_seconds < 0:
        parser.error("--grace-seconds cannot be negative")

    if args.store_path is not None:
        sessions = JsonFileSessionStore(args.store_path)
        await sessions.load()
    else:
        sessions = InMemorySessionStore()

    if args.seed is not None:
        users, balances = load_seed(args.seed)
    else:
        logger.warning("No --seed given; the user directory and balances start empty")
        users, balances = InMemoryUserDirectory(), InMemoryBalanceStore()

    hub = SignalingHub()
    session_manager = SessionManager(
        sessions,
        balances,
        users,
        hub,
        tick_seconds=args.tick_seconds,
        grace_seconds=args.grace_seconds,
    )
    await session_manager.recover()
    signaling_server = SignalingServer(args.host, args.signal_port, hub, session_manager)
    api_server = ApiServer(session_manager, hub, host=args.api_host, port=args.api_port)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    shutdown_requested = False

    def trigger_shutdown(source: str) -> bool:
        nonlocal shutdown_requested
        if shutdown_requested:
            logger.debug("Shutdown already in progress (source=%s)", source)
            return False
        shutdown_requested = True
        logger.info("%s initiated shutdown", source)
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()
        return True

    def _signal_handler() -> None:
        trigger_shutdown("Shutdown signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await signaling_server.start()
    await api_server.start()

    heartbeat_task: Optional[asyncio.Task[None]] = asyncio.create_task(hub.heartbeat_watcher())

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    try:
        ended = await session_manager.end_all()
        logger.info("Ended %s active sessions", ended)
    except Exception:
        logger.exception("Failed to end active sessions during shutdown")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        pass

    try:
        await signaling_server.stop()
    except Exception:
        logger.exception("Error stopping signaling server")

    try:
        await api_server.stop()
    except Exception:
        logger.exception("Error stopping API server")

    logger.info("Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
