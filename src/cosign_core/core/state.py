# src/cosign_core/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..notify.fanout import Notifier
from ..notify.registry import ConnectionRegistry
from ..tasks.state_machine import TaskStateMachine
from ..tasks.task_scheduler import DeadlineScheduler
from .ports import Clock, TaskRepo


@dataclass
class AppState:
    """
    Process-wide wiring, built once by cli.bootstrap and torn down on shutdown.

    Nothing here is a module-level global: connectors and commands receive the state.
    """

    settings: Any
    clock: Clock
    task_store: TaskRepo
    registry: ConnectionRegistry
    notifier: Notifier
    machine: TaskStateMachine
    scheduler: DeadlineScheduler
