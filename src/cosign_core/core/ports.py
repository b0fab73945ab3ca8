# src/cosign_core/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps storage/transport/time swappable and makes testing easier.
"""

from collections.abc import Iterable, Mapping
from typing import Any, Protocol


class Clock(Protocol):
    """Wall-clock source in UTC epoch seconds. Injected so scans are deterministic in tests."""

    def now(self) -> float: ...


class PushChannel(Protocol):
    """
    Transport-side port: one live bidirectional connection to a client.

    send() must not block for long; transports buffer internally.
    """

    def send(self, data: bytes) -> None: ...
    def close(self) -> None: ...
    def is_open(self) -> bool: ...


class TokenResolver(Protocol):
    """Maps a handshake token to a user identity (None = reject the connection)."""

    def resolve(self, token: str | None) -> str | None: ...


class PresenceGraph(Protocol):
    """Saved-verifier edges, consumed read-only by presence fan-out."""

    def list_saved_verifiers(self, user_id: str) -> list[str]: ...
    def list_users_who_saved(self, verifier_id: str) -> list[str]: ...


class TaskRepo(PresenceGraph, Protocol):
    # Scheduler API
    def find_active_tasks_past_deadline(
            self, *, now_ts: float, limit: int = 500, after_id: int = 0
    ) -> list[int]: ...
    def try_transition(
            self,
            task_id: int,
            *,
            expected: Iterable[Any],
            new_status: Any,
            fields: Mapping[str, Any] | None = None,
            expose_penalty: bool = False,
            now_ts: float | None = None,
    ) -> Any: ...  # TransitionResult (kept as Any to avoid import coupling)

    # Reads
    def count_tasks(self) -> int: ...
    def get_task(self, task_id: int) -> Any | None: ...
    def get_penalty(self, task_id: int) -> Any | None: ...
    def list_tasks_for_user(self, user_id: str, limit: int = 32) -> list[Any]: ...
    def list_active_tasks_for_pair(self, *, creator_id: str, verifier_id: str, now_ts: float) -> list[Any]: ...

    # Task creation
    def add_task(
            self,
            *,
            creator_id: str,
            verifier_id: str,
            title: str,
            deadline: float,
            penalty_content: str,
            description: str = "",
            now_ts: float | None = None,
    ) -> int: ...

    # Saved-verifier graph writes
    def add_saved_verifier(self, user_id: str, verifier_id: str) -> bool: ...
    def remove_saved_verifier(self, user_id: str, verifier_id: str) -> bool: ...

    def close(self) -> None: ...