from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from fluxwatch.models import Node


class AutomationState(StrEnum):
    idle = "idle"
    starting = "starting"
    running = "running"
    suspended = "suspended"


Credential = str | bytes


@dataclass
class NodeAutomation:
    """Mutable automation record owned by one node.

    ``task`` is the node's single settle-then-loop task; ``stop_event`` belongs to
    that task's run and is replaced whenever a new run starts, so a stale task can
    never observe a later run as its own.
    """

    node: Node
    state: AutomationState = AutomationState.idle
    credential: Credential | None = None

    task: asyncio.Task | None = None
    stop_event: asyncio.Event | None = None
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    cycles_run: int = 0
    apps_removed: int = 0
    last_cycle_at: datetime | None = None
    last_error: str = ""
    last_updated: datetime | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)

    @property
    def cycle_scheduled(self) -> bool:
        return self.task is not None and not self.task.done()

    def is_current_run(self, stop_event: asyncio.Event | None) -> bool:
        return (
            stop_event is not None
            and stop_event is self.stop_event
            and not stop_event.is_set()
            and self.has_credential
        )

    def touch(self) -> None:
        self.last_updated = datetime.now()

    def as_dict(self) -> dict:
        return {
            "node_id": self.node.id,
            "name": self.node.name,
            "state": str(self.state),
            "logged_in": self.has_credential,
            "cycle_scheduled": self.cycle_scheduled,
            "cycles_run": self.cycles_run,
            "apps_removed": self.apps_removed,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_error": self.last_error,
        }
