"""
Command-line entry point.

Connects to a socket.io chat server, prints the feed of one context and
follows it live:

    feedsync --context team-1 --author user-42 --send "hello" --duration 30
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from feedsync.config import FeedSettings, load_settings
from feedsync.errors import FeedSyncError
from feedsync.models import Message, MessageKind
from feedsync.observability import setup_tracing, shutdown_tracing
from feedsync.session import ChatSession
from feedsync.transport.socketio_transport import SocketIOTransport

# Basic logging until we load configuration
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def configure_logging(log_level: str = "INFO",
                      log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                      log_to_file: bool = False,
                      log_file_path: str = "logs/feedsync.log",
                      max_lines_per_file: int = 5000,
                      max_log_files: int = 10):
    """
    Configure the root logger: a console handler always, plus an optional
    rotating file handler.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log message format string
        log_to_file: Whether to enable file logging
        log_file_path: Path to log file (directory will be created if needed)
        max_lines_per_file: Maximum lines per log file before rotation
        max_log_files: Maximum number of log files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        logger.error(f"Invalid log level: {log_level}. Using INFO instead.")
        logging.basicConfig(level=logging.INFO, format=log_format, force=True)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            from logging.handlers import RotatingFileHandler

            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            # Size limit approximated at ~100 characters per line
            file_handler = RotatingFileHandler(
                filename=log_file_path,
                maxBytes=max_lines_per_file * 100,
                backupCount=max_log_files - 1,  # current file + backups = total
                encoding='utf-8'
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Failed to set up file logging at {log_file_path}: {e}. Console only.")

    root_logger.setLevel(numeric_level)
    logger.info(f"Logging configured: level={log_level.upper()}, file={'on' if log_to_file else 'off'}")


def format_message(message: Message) -> str:
    """One feed line: timestamp, author, delivery state, content."""
    timestamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
    if message.kind is MessageKind.SYSTEM:
        author = f"<{message.system_type or 'system'}>"
    else:
        author = message.author_id or "?"
    line = f"{timestamp} [{message.delivery_state.value:>10}] {author}: {message.content}"
    if message.error:
        line += f"  ({message.error})"
    return line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedsync",
        description="Follow a chat context's live message feed",
    )
    parser.add_argument('--context', '-c', required=True,
                        help='Chat context (team/conversation) id')
    parser.add_argument('--author', '-a', required=True,
                        help='Local participant id used for sending and typing')
    parser.add_argument('--url', '-u', default=None,
                        help='Socket.IO server URL (default: FEEDSYNC_SERVER_URL)')
    parser.add_argument('--send', '-s', default=None,
                        help='Send one message after the feed loads')
    parser.add_argument('--duration', '-d', type=float, default=0,
                        help='Seconds to follow live events (default: 0, until interrupted)')
    parser.add_argument('--log-level', default=None,
                        help='Override FEEDSYNC_LOG_LEVEL')
    return parser


async def amain(argv: Optional[List[str]] = None) -> int:
    """Asynchronous main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.url:
        overrides["server_url"] = args.url
    if args.log_level:
        overrides["log_level"] = args.log_level
    try:
        settings: FeedSettings = load_settings(**overrides)
    except ValueError as e:
        logger.critical(f"Configuration error: {e}")
        return 1

    configure_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_to_file=settings.log_to_file,
        log_file_path=settings.log_file_path,
        max_lines_per_file=settings.log_max_lines_per_file,
        max_log_files=settings.log_max_files
    )
    if settings.tracing_enabled:
        setup_tracing("feedsync")

    transport = SocketIOTransport(settings.server_url, auth_token=settings.auth_token,
                                  request_timeout=settings.request_timeout)
    try:
        await transport.connect()
    except FeedSyncError as e:
        logger.critical(f"Could not connect: {e}")
        shutdown_tracing()
        return 1

    session = ChatSession(args.context, args.author, transport, settings)
    printed = set()

    def print_new(current: ChatSession) -> None:
        for message in current.messages:
            key = (message.id, message.delivery_state)
            if key not in printed:
                printed.add(key)
                print(format_message(message))

    try:
        await session.open()
        print_new(session)
        session.add_listener(print_new)
        if session.error:
            logger.warning(session.error)

        if args.send:
            await session.send_message(args.send)

        if args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received. Shutting down...")
    finally:
        await session.close()
        await transport.disconnect()
        shutdown_tracing()
        logger.info("Shutdown complete.")
    return 0


def main():
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(amain()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
