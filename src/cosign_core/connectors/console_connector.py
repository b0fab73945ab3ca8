# src/cosign_core/connectors/console_connector.py

from __future__ import annotations

import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState
from ..notify.messages import decode_message

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    Best-effort: if not a TTY, just print a new line.
    """
    try:
        if sys.stdout.isatty():
            sys.stdout.write("\033[1A\033[2K\r")
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        else:
            print(line)
    except OSError:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}")


class ConsoleChannel:
    """
    PushChannel that prints pushed messages to the terminal.

    Lets an operator "be" a user from the REPL and watch that user's notifications.
    """

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._open = True

    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False

    def send(self, data: bytes) -> None:
        if not self._open:
            raise ConnectionError("console channel closed")
        msg = decode_message(data)
        print(f"\n[{_ts_local()}] <<< push to {self.user_id}: {msg.get('type')} {msg.get('payload')}", flush=True)


def run_console_loop(state: AppState) -> None:
    """
    Operator REPL.

    /as <user_id> switches the acting identity (and attaches a console push channel for
    it); everything else goes through the command registry.
    """
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Use /as <user_id> to act as a user, /help for commands, /exit to quit.\n")

    user_id: str | None = None
    channel: ConsoleChannel | None = None

    def emit(text: str) -> None:
        # Immediate user-visible feedback for long operations (e.g. a manual scan)
        print(f"[{_ts_local()}] {text}", flush=True)

    while True:
        try:
            user_input = input(f"[{user_id or '-'}] >>> ").strip()
            _rewrite_prev_line(f"[{_ts_local()}] [{user_id or '-'}] >>> {user_input}")
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        parts = user_input.split()
        if parts[0].lower() == "/as":
            if len(parts) != 2:
                _print_ts("Usage: /as <user_id>")
                continue
            if channel is not None:
                state.registry.unregister(channel.user_id, channel)
            user_id = parts[1]
            channel = ConsoleChannel(user_id)
            state.registry.register(user_id, channel)
            _print_ts(f"Now acting as {user_id}.")
            continue

        try:
            cmd_response = command_registry.handle(state, user_input, user_id=user_id, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            cmd_response = "Internal error while handling a command."

        if cmd_response is None:
            cmd_response = "Not a command. Use /help to list available commands."
        print(f"[{_ts_local()}] {cmd_response}")

    if channel is not None:
        state.registry.unregister(channel.user_id, channel)
    logger.info("Console connector finished.")
