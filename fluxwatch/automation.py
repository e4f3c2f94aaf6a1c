from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable, Iterable

from fluxwatch.config import DEFAULT_SETTLE_DELAY_SEC, clamp_interval
from fluxwatch.flux_client import FluxApiClient
from fluxwatch.models import Node, RemovalSoftFail, RemovalSuccess
from fluxwatch.session_log import SessionLog
from fluxwatch.state import AutomationState, Credential, NodeAutomation

PATH_SEPARATOR = "/"
NAME_SEPARATOR = "_"

StateListener = Callable[[str, AutomationState], None]
AuthInvalidatedListener = Callable[[str, str], None]

ACTIVE_STATES = {AutomationState.starting, AutomationState.running}


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Wait ``seconds`` or until ``stop_event`` is set; True means stopped."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


def strip_leading_separator(name: str) -> str:
    if name.startswith(PATH_SEPARATOR):
        return name[len(PATH_SEPARATOR) :]
    return name


def matches_target(container_name: str, prefixes: Iterable[str]) -> bool:
    return any(prefix and prefix in container_name for prefix in prefixes)


def derive_removal_target(container_name: str) -> str:
    # Component containers are named "<component>_<app>"; the app is removed as a whole.
    _, separator, tail = container_name.rpartition(NAME_SEPARATOR)
    if not separator or not tail:
        return container_name
    return tail


@dataclass
class CycleReport:
    node_id: str
    skipped: bool = False
    listing_failed: bool = False
    listed: int = 0
    matched: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    aborted: bool = False
    suspended: bool = False


class AutomationEngine:
    """Per-node credential lifecycle and poll/match/remove cycles.

    Each node owns a ``NodeAutomation`` record. A login starts one task per node
    that waits the settle delay, runs a cycle, then repeats on the interval; the
    task watches a stop event that logout or an auth failure sets. Cycles for a
    node are serialised by the record's run lock, so a manual ``run_cycle`` never
    overlaps a scheduled one.
    """

    def __init__(
        self,
        client: FluxApiClient,
        session_log: SessionLog,
        target_prefixes: Iterable[str],
        interval_sec: int,
        settle_delay_sec: float = DEFAULT_SETTLE_DELAY_SEC,
        logger: logging.Logger | None = None,
        on_state_change: StateListener | None = None,
        on_auth_invalidated: AuthInvalidatedListener | None = None,
    ) -> None:
        self._client = client
        self._session = session_log
        self._prefixes = [prefix for prefix in target_prefixes if prefix]
        self._interval = clamp_interval(interval_sec)
        self._settle_delay = max(0.0, settle_delay_sec)
        self._logger = logger or logging.getLogger("fluxwatch.automation")
        self._on_state_change = on_state_change
        self._on_auth_invalidated = on_auth_invalidated
        self._records: dict[str, NodeAutomation] = {}

    @property
    def interval_sec(self) -> int:
        return self._interval

    @property
    def nodes(self) -> list[Node]:
        return [record.node for record in self._records.values()]

    def get(self, node_id: str) -> NodeAutomation | None:
        return self._records.get(node_id)

    def register_nodes(self, nodes: Iterable[Node]) -> list[Node]:
        added: list[Node] = []
        for node in nodes:
            existing = self._records.get(node.id)
            if existing is not None:
                existing.node = node
                continue
            self._records[node.id] = NodeAutomation(node=node)
            added.append(node)
        return added

    def snapshot(self) -> list[dict]:
        return [record.as_dict() for record in self._records.values()]

    def handle_credential_change(self, node_id: str, logged_in: bool, token: Credential | None = None) -> None:
        record = self._records.get(node_id)
        if record is None:
            self._session.record("MAIN", f"Credential change for unknown node '{node_id}' ignored.")
            return
        if logged_in and token:
            self._on_login(record, token)
        else:
            self._on_logout(record)

    def suspend(self, node_id: str, reason: str) -> None:
        record = self._records.get(node_id)
        if record is None:
            return
        record.credential = None
        if record.stop_event is not None:
            record.stop_event.set()
        record.last_error = f"auth_failed: {reason}"
        self._set_state(record, AutomationState.suspended)
        self._session.record(f"MAIN-{node_id}", "Auth token has expired or is invalid. Pausing automation.")
        self._logger.warning("node_suspended", extra={"node_id": node_id, "error": reason})

        if self._on_auth_invalidated is not None:
            try:
                self._on_auth_invalidated(node_id, reason)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("auth_invalidated_callback_failed", extra={"node_id": node_id, "error": str(exc)})

    async def run_cycle(self, node_id: str) -> CycleReport:
        record = self._records.get(node_id)
        if record is None:
            self._session.record("MAIN", f"Manual cycle for unknown node '{node_id}' ignored.")
            return CycleReport(node_id=node_id, skipped=True)
        if record.state != AutomationState.running:
            self._session.record(f"AUTOMATION-{node_id}", f"Manual cycle ignored: node is {record.state}.")
            return CycleReport(node_id=node_id, skipped=True)
        return await self._run_cycle_for(record, record.stop_event)

    async def stop_all(self) -> None:
        tasks: list[asyncio.Task] = []
        for record in self._records.values():
            if record.stop_event is not None:
                record.stop_event.set()
            if record.task is not None:
                record.task.cancel()
                tasks.append(record.task)
                record.task = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_login(self, record: NodeAutomation, token: Credential) -> None:
        node_id = record.node.id
        record.credential = token
        record.touch()
        if record.state in ACTIVE_STATES:
            self._session.record_debug(f"MAIN-{node_id}", "Received LOGIN notification; automation already active.")
            return

        self._session.record(
            f"MAIN-{node_id}",
            f"Received LOGIN notification. Automation starts in {self._settle_delay:g}s.",
        )
        stop_event = asyncio.Event()
        record.stop_event = stop_event
        record.last_error = ""
        self._set_state(record, AutomationState.starting)
        record.task = asyncio.create_task(self._run_node(record, stop_event), name=f"fluxwatch-{node_id}")

    def _on_logout(self, record: NodeAutomation) -> None:
        node_id = record.node.id
        was_active = record.state in ACTIVE_STATES
        record.credential = None
        if record.stop_event is not None:
            record.stop_event.set()
        self._set_state(record, AutomationState.idle)
        if was_active:
            self._session.record(f"MAIN-{node_id}", "Received LOGOUT notification. Stopping automation...")
        else:
            self._session.record(f"MAIN-{node_id}", "Received LOGOUT notification.")

    async def _run_node(self, record: NodeAutomation, stop_event: asyncio.Event) -> None:
        node_id = record.node.id
        if await _sleep_or_stop(stop_event, self._settle_delay):
            return
        if not record.is_current_run(stop_event):
            return

        self._set_state(record, AutomationState.running)
        self._session.record(f"MAIN-{node_id}", f"Starting automation (every {self._interval}s)...")

        while record.is_current_run(stop_event):
            try:
                await self._run_cycle_for(record, stop_event)
            except Exception as exc:  # noqa: BLE001
                record.last_error = f"cycle_failed: {exc}"
                self._logger.warning("automation_cycle_failed", extra={"node_id": node_id, "error": str(exc)})
                self._session.record(f"AUTOMATION-{node_id}-Error", f"Automation cycle failed: {exc}")
            if not record.is_current_run(stop_event):
                break
            if await _sleep_or_stop(stop_event, self._interval):
                break

    async def _run_cycle_for(self, record: NodeAutomation, stop_event: asyncio.Event | None) -> CycleReport:
        node_id = record.node.id
        prefix = f"AUTOMATION-{node_id}"
        report = CycleReport(node_id=node_id)

        async with record.run_lock:
            if not record.is_current_run(stop_event):
                self._session.record_debug(prefix, "Cycle skipped: node is not authenticated.")
                report.skipped = True
                return report

            record.cycles_run += 1
            record.last_cycle_at = datetime.now()
            record.touch()
            self._session.record(prefix, "Checking for target applications to remove...")

            workloads = await self._client.list_running_apps(record.node, record.credential)
            if workloads is None:
                report.listing_failed = True
                if record.has_credential:
                    self._session.record(prefix, "Could not retrieve running apps. API might be down.")
                return report
            report.listed = len(workloads)

            attempted: set[str] = set()
            for workload in workloads:
                container_name = strip_leading_separator(workload.name)
                if not matches_target(container_name, self._prefixes):
                    continue
                target = derive_removal_target(container_name)
                if target in attempted:
                    continue
                attempted.add(target)
                report.matched.append(target)

                if not record.is_current_run(stop_event):
                    self._session.record(prefix, "Automation stopped; skipping remaining removals in this cycle.")
                    report.aborted = True
                    break

                self._session.record(
                    prefix,
                    f"Found target app component: {container_name}. Attempting to remove main app: {target}...",
                )
                outcome = await self._client.remove_app(record.node, record.credential, target)

                if isinstance(outcome, RemovalSuccess):
                    report.removed.append(target)
                    record.apps_removed += 1
                    self._session.record(prefix, f"Removal of {target} accepted by node.")
                    if outcome.steps:
                        self._session.record_debug(prefix, "Removal steps:", list(outcome.steps))
                    continue

                report.failed.append(target)
                if isinstance(outcome, RemovalSoftFail) and outcome.is_auth_error:
                    report.suspended = True
                    self.suspend(node_id, outcome.message)
                    break

                record.last_error = f"remove_failed: {outcome.message}"
                self._session.record(f"{prefix}-Error", f"Failed to remove {target}: {outcome.message}")

        return report

    def _set_state(self, record: NodeAutomation, state: AutomationState) -> None:
        if record.state == state:
            return
        record.state = state
        record.touch()
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(record.node.id, state)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("state_callback_failed", extra={"node_id": record.node.id, "error": str(exc)})
