# src/cosign_core/cli/commands.py

from __future__ import annotations

import contextlib
import inspect
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import cast

from ..core.errors import CosignError
from ..core.state import AppState
from ..tasks import task_api
from ..tasks.task_models import Task

CommandEmitter = Callable[[str], None]
CommandHandler3 = Callable[[AppState, list[str], str | None], str]
CommandHandler4 = Callable[[AppState, list[str], str | None, CommandEmitter | None], str]
CommandHandler = CommandHandler3 | CommandHandler4

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /create, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.

        Domain errors (not found, not authorized, illegal transition, ...) become the
        reply text; anything else propagates to the connector.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 4

        try:
            if nparams >= 4:
                h4 = cast(CommandHandler4, handler)
                return h4(state, args, user_id, emit)
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, user_id)
        except CosignError as e:
            logger.info("/%s rejected (user_id=%s): %s", name, user_id, e)
            return f"Error: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()

_NO_USER = "No acting user. Use /as <user_id> first."


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _parse_task_id(raw: str) -> int | None:
    try:
        return int(raw.lstrip("#"))
    except ValueError:
        return None


def _task_line(task: Task) -> str:
    return (
        f"#{task.id} [{task.status.value}] {task.title} "
        f"(creator={task.creator_id}, verifier={task.verifier_id}, due {_fmt_ts(task.deadline)})"
    )


def cmd_help(state: AppState, args: list[str], user_id: str | None) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str], user_id: str | None) -> str:
    s = state.settings
    report = state.scheduler.last_report
    if report is None:
        last = "never"
    else:
        last = (
            f"{_fmt_ts(report.started_at)} candidates={report.candidates} "
            f"missed={len(report.missed)} noops={report.noops} errors={report.errors}"
        )
    ws = f"ws://{s.websocket_host}:{s.websocket_port}/ws" if s.websocket_enabled else "OFF"
    return (
        "Status:\n"
        f"  Acting user: {user_id or '-'}\n"
        f"  Tasks stored: {state.task_store.count_tasks()}\n"
        f"  Online users: {len(state.registry.online_users())}\n"
        f"  WebSocket: {ws}\n"
        f"  Scan interval: {state.scheduler.interval_seconds:.0f}s "
        f"(scans={state.scheduler.scans_completed}, skipped ticks={state.scheduler.ticks_skipped})\n"
        f"  Last scan: {last}"
    )


def cmd_online(state: AppState, args: list[str], user_id: str | None) -> str:
    users = state.registry.online_users()
    if not users:
        return "Nobody is online."
    return "Online: " + ", ".join(users)


def cmd_tasks(state: AppState, args: list[str], user_id: str | None) -> str:
    """
    /tasks         -> tasks of the acting user (as creator or verifier)
    /tasks <user>  -> tasks of another user
    """
    who = args[0] if args else user_id
    if not who:
        return _NO_USER
    tasks = state.task_store.list_tasks_for_user(who, limit=32)
    if not tasks:
        return f"No tasks for {who}."
    return "\n".join([f"Tasks for {who}:"] + [f"  {_task_line(t)}" for t in tasks])


def cmd_task(state: AppState, args: list[str], user_id: str | None) -> str:
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None:
        return "Usage: /task <task_id>"
    task = state.task_store.get_task(task_id)
    if task is None:
        return f"Task {task_id} not found."

    lines = [_task_line(task)]
    if task.description:
        lines.append(f"  description: {task.description}")
    if task.has_proof:
        files = ", ".join(task.proof_attachments) or "-"
        lines.append(f"  proof: {task.proof_description or '-'} (attachments: {files})")
        lines.append(f"  submitted: {_fmt_ts(task.submitted_at)}")
    if task.denial_reason:
        lines.append(f"  denied: {task.denial_reason}")
    if task.completed_at is not None:
        lines.append(f"  completed: {_fmt_ts(task.completed_at)}")
    return "\n".join(lines)


def cmd_create(state: AppState, args: list[str], user_id: str | None) -> str:
    """/create <verifier> <minutes> <title...> | <penalty...>"""
    usage = "Usage: /create <verifier> <minutes> <title> | <penalty>"
    if not user_id:
        return _NO_USER
    if len(args) < 3:
        return usage

    verifier_id = args[0]
    try:
        minutes = float(args[1])
    except ValueError:
        return usage

    title, sep, penalty = " ".join(args[2:]).partition("|")
    if not sep:
        return usage

    task = task_api.create_task_due_in(
        state,
        creator_id=user_id,
        verifier_id=verifier_id,
        title=title.strip(),
        minutes=minutes,
        penalty_content=penalty.strip(),
    )
    return f"Created {_task_line(task)}"


def cmd_submit(state: AppState, args: list[str], user_id: str | None) -> str:
    """/submit <task_id> <proof text...>"""
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None or len(args) < 2:
        return "Usage: /submit <task_id> <proof description>"

    outcome = state.machine.submit_proof(task_id, actor_id=user_id, description=" ".join(args[1:]))
    return f"Proof submitted for #{task_id}; status {outcome.status.value}."


def cmd_approve(state: AppState, args: list[str], user_id: str | None) -> str:
    """/approve <task_id> [comment...]"""
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None:
        return "Usage: /approve <task_id> [comment]"

    comment = " ".join(args[1:]) or None
    outcome = state.machine.approve(task_id, actor_id=user_id, comment=comment)
    return f"Task #{task_id} approved; status {outcome.status.value}."


def cmd_reject(state: AppState, args: list[str], user_id: str | None) -> str:
    """/reject <task_id> <reason...>"""
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None:
        return "Usage: /reject <task_id> <reason>"

    outcome = state.machine.reject(task_id, actor_id=user_id, reason=" ".join(args[1:]))
    return f"Proof for #{task_id} rejected; status {outcome.status.value}."


def cmd_reassign(state: AppState, args: list[str], user_id: str | None) -> str:
    """/reassign <task_id> <new_verifier> [minutes_from_now]"""
    usage = "Usage: /reassign <task_id> <new_verifier> [minutes_from_now]"
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None or len(args) < 2:
        return usage

    new_deadline: float | None = None
    if len(args) >= 3:
        try:
            new_deadline = state.clock.now() + float(args[2]) * 60.0
        except ValueError:
            return usage

    outcome = state.machine.reassign(
        task_id,
        actor_id=user_id,
        new_verifier_id=args[1],
        new_deadline=new_deadline,
    )
    return f"Task #{task_id} reassigned to {args[1]}; status {outcome.status.value}."


def cmd_verifier(state: AppState, args: list[str], user_id: str | None) -> str:
    """
    /verifier               -> list saved verifiers
    /verifier add <user>    -> save a verifier
    /verifier remove <user> -> remove it (active tasks assigned to it are paused)
    """
    if not user_id:
        return _NO_USER

    if not args:
        saved = state.task_store.list_saved_verifiers(user_id)
        return "Saved verifiers: " + (", ".join(saved) if saved else "none")

    sub = args[0].lower()
    if len(args) < 2 or sub not in ("add", "remove", "rm"):
        return "Usage: /verifier [add|remove <user_id>]"

    verifier_id = args[1]
    if sub == "add":
        if task_api.add_verifier(state, user_id=user_id, verifier_id=verifier_id):
            return f"{verifier_id} added to your verifiers."
        return f"{verifier_id} is already one of your verifiers."

    paused = task_api.remove_verifier(state, user_id=user_id, verifier_id=verifier_id)
    if paused:
        ids = ", ".join(f"#{i}" for i in paused)
        return f"{verifier_id} removed. Paused tasks: {ids}."
    return f"{verifier_id} removed."


def cmd_penalty(state: AppState, args: list[str], user_id: str | None) -> str:
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None:
        return "Usage: /penalty <task_id>"

    content = task_api.read_penalty(state, task_id=task_id, viewer_id=user_id)
    if content is None:
        return f"The penalty for #{task_id} is still sealed."
    return f"Penalty for #{task_id}: {content}"


def cmd_check(state: AppState, args: list[str], user_id: str | None) -> str:
    if not user_id:
        return _NO_USER
    task_id = _parse_task_id(args[0]) if args else None
    if task_id is None:
        return "Usage: /check <task_id>"

    outcome = task_api.trigger_deadline_check(state, task_id=task_id, user_id=user_id)
    if outcome.committed:
        return f"Task #{task_id} marked {outcome.status.value}."
    return f"Nothing to do for #{task_id} (status {outcome.status.value})."


def cmd_scan(
    state: AppState,
    args: list[str],
    user_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    if emit:
        with contextlib.suppress(Exception):
            emit("[SCAN] Running deadline scan...")

    report = state.scheduler.scan_once()
    if report is None:
        return "A deadline scan is already running."
    missed = ", ".join(f"#{i}" for i in report.missed) or "none"
    return (
        f"Scan done in {report.duration_s:.3f}s: candidates={report.candidates} "
        f"missed={missed} noops={report.noops} errors={report.errors}"
    )


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show service status and the last scan.")
registry.register("online", cmd_online, help_text="List connected users.")
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [user_id].")
registry.register("task", cmd_task, help_text="Show one task: /task <id>.")
registry.register(
    "create",
    cmd_create,
    help_text="Create a task: /create <verifier> <minutes> <title> | <penalty>.",
)
registry.register("submit", cmd_submit, help_text="Submit proof: /submit <id> <description>.")
registry.register("approve", cmd_approve, help_text="Approve proof: /approve <id> [comment].")
registry.register("reject", cmd_reject, help_text="Reject proof: /reject <id> <reason>.")
registry.register(
    "reassign",
    cmd_reassign,
    help_text="Reassign a paused/missed task: /reassign <id> <verifier> [minutes].",
)
registry.register(
    "verifier",
    cmd_verifier,
    help_text="Saved verifiers: /verifier | /verifier add <user> | /verifier remove <user>.",
)
registry.register("penalty", cmd_penalty, help_text="Read a penalty: /penalty <id>.")
registry.register("check", cmd_check, help_text="Trigger a deadline check: /check <id>.")
registry.register("scan", cmd_scan, help_text="Run one deadline scan now.")
