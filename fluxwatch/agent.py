from __future__ import annotations

import asyncio
import threading
from typing import Any, Coroutine

import httpx

from fluxwatch.automation import AutomationEngine
from fluxwatch.config import MonitorConfig
from fluxwatch.discovery import discover_nodes
from fluxwatch.flux_client import FluxApiClient
from fluxwatch.models import Node
from fluxwatch.session_log import SessionLog
from fluxwatch.state import AutomationState, Credential
from fluxwatch.utils import check_internet_connection


class AgentController:
    READY_TIMEOUT_SEC = 5
    STOP_JOIN_SEC = 3

    def __init__(
        self,
        config: MonitorConfig,
        event_queue,
        logger,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._queue = event_queue
        self._logger = logger
        self._transport = transport

        self._session = SessionLog(
            config.log_path,
            capacity=config.max_log_history,
            max_file_bytes=config.max_log_file_size_bytes,
            debug=config.debug,
            clear_on_start=config.log_clear_on_start,
            dispatcher=self._dispatch_log_line,
        )

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._ready = threading.Event()

        self._client: FluxApiClient | None = None
        self._engine: AutomationEngine | None = None

    @property
    def session_log(self) -> SessionLog:
        return self._session

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            self.emit("console", {"message": "agent_already_running"})
            return

        self._ready.clear()
        self._thread = threading.Thread(target=self._run_thread, name="fluxwatch-agent", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=self.READY_TIMEOUT_SEC):
            self._logger.warning("agent_start_slow", extra={"timeout": self.READY_TIMEOUT_SEC})
        self.emit("console", {"message": "agent_started"})

    def stop(self) -> None:
        if not self.is_running():
            self.emit("console", {"message": "agent_already_stopped"})
            return

        if self._loop and self._stop_event:
            self._loop.call_soon_threadsafe(self._stop_event.set)

        if self._thread:
            self._thread.join(timeout=self.STOP_JOIN_SEC)
            if self._thread.is_alive():
                self.emit("console", {"message": "agent_stop_pending"})
                return
        self._thread = None
        self._loop = None
        self._stop_event = None
        self._session.close()
        self.emit("console", {"message": "agent_stopped"})

    def rediscover(self) -> None:
        self._submit_async(self._run_discovery())

    def set_credential(self, node_id: str, logged_in: bool, token: Credential | None = None) -> None:
        self._submit_async(self._apply_credential(node_id, logged_in, token))

    def run_cycle_now(self, node_id: str) -> None:
        self._submit_async(self._run_cycle_now(node_id))

    def request_status(self) -> None:
        self._submit_async(self._emit_status())

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        self._queue.put({"type": event_type, "payload": payload or {}})

    def _dispatch_log_line(self, line: str) -> None:
        self.emit("log", {"line": line})

    def _on_state_change(self, node_id: str, state: AutomationState) -> None:
        self.emit("node_state", {"node_id": node_id, "state": str(state)})

    def _on_auth_invalidated(self, node_id: str, reason: str) -> None:
        self.emit("auth_invalidated", {"node_id": node_id, "reason": reason})

    def _run_thread(self) -> None:
        asyncio.run(self._run())

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._client = FluxApiClient(
            self._session,
            timeout=self._config.request_timeout_sec,
            logger=self._logger,
            transport=self._transport,
        )
        self._engine = AutomationEngine(
            self._client,
            self._session,
            self._config.target_app_prefixes,
            self._config.automation_interval_sec,
            settle_delay_sec=self._config.settle_delay_sec,
            logger=self._logger,
            on_state_change=self._on_state_change,
            on_auth_invalidated=self._on_auth_invalidated,
        )
        self._ready.set()

        try:
            await self._initialize()
            await self._stop_event.wait()
        finally:
            await self._shutdown()

    async def _initialize(self) -> None:
        self._session.record(
            "SYSTEM",
            f"FluxWatch starting. Targets: {self._config.target_app_prefixes or '-'}; "
            f"interval {self._engine.interval_sec}s; debug {'on' if self._config.debug else 'off'}.",
        )
        if not self._config.target_app_prefixes:
            self._session.record("SYSTEM", "No target app prefixes configured; cycles will not remove anything.")

        if self._config.check_connectivity:
            online = await check_internet_connection(timeout=self._config.request_timeout_sec)
            if not online:
                self._session.record("SYSTEM", "No internet connection detected (DNS lookup failed).")

        await self._run_discovery(initial=True)

    def _static_nodes(self) -> list[Node]:
        return [
            Node(
                id=item["id"],
                name=item["name"],
                ui_url=item["ui_url"],
                api_url=item["api_url"],
                discovery_status="static",
            )
            for item in self._config.static_nodes
        ]

    async def _run_discovery(self, initial: bool = False) -> None:
        discovered = await discover_nodes(self._client, self._config.scan_ips, self._session)
        added = self._engine.register_nodes([*self._static_nodes(), *discovered])

        nodes = self._engine.nodes
        if not nodes:
            self._session.record("DISCOVERY", "No Flux nodes found. Check ScanIPs and network access.")
        elif not initial:
            self._session.record("DISCOVERY", f"Rescan complete: {len(added)} new node(s).")

        self.emit(
            "nodes",
            {
                "nodes": [node.as_dict() for node in nodes],
                "active_node_id": nodes[0].id if nodes else None,
            },
        )

    async def _apply_credential(self, node_id: str, logged_in: bool, token: Credential | None) -> None:
        self._engine.handle_credential_change(node_id, logged_in, token)

    async def _run_cycle_now(self, node_id: str) -> None:
        report = await self._engine.run_cycle(node_id)
        self.emit(
            "console",
            {
                "message": (
                    f"cycle_done node_id={node_id} skipped={report.skipped} "
                    f"removed={len(report.removed)} failed={len(report.failed)}"
                )
            },
        )

    async def _emit_status(self) -> None:
        self.emit("status", {"nodes": self._engine.snapshot()})

    async def _shutdown(self) -> None:
        if self._engine:
            await self._engine.stop_all()
        if self._client:
            await self._client.close()
            self._client = None
        self._session.record("SYSTEM", "Automation engine stopped.")

    def _submit_async(self, coro: Coroutine[Any, Any, Any]) -> None:
        if not (self._loop and self._loop.is_running()):
            coro.close()
            self._logger.warning("agent_not_running")
            self.emit("console", {"message": "task_rejected: agent_not_running"})
            return

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)

        def _done_callback(done_future) -> None:
            try:
                done_future.result()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("async_task_failed", extra={"error": str(exc)})
                self.emit("console", {"message": f"task_failed error={exc}"})

        future.add_done_callback(_done_callback)
