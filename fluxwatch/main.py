from __future__ import annotations

import queue
import signal
import sys
import threading

from fluxwatch.agent import AgentController
from fluxwatch.config import get_log_dir, load_config
from fluxwatch.logger import setup_logging

HELP_TEXT = "commands: login <node_id> <token> | logout <node_id> | scan | run <node_id> | status | quit"


def handle_command(controller: AgentController, line: str) -> bool:
    """Apply one operator command; returns False when the runner should exit."""
    parts = line.strip().split()
    if not parts:
        return True

    command, args = parts[0].lower(), parts[1:]
    if command == "quit":
        return False
    if command == "login" and len(args) == 2:
        controller.set_credential(args[0], True, args[1])
    elif command == "logout" and len(args) == 1:
        controller.set_credential(args[0], False, None)
    elif command == "scan" and not args:
        controller.rediscover()
    elif command == "run" and len(args) == 1:
        controller.run_cycle_now(args[0])
    elif command == "status" and not args:
        controller.request_status()
    else:
        controller.emit("console", {"message": HELP_TEXT})
    return True


def format_event(event: dict) -> str | None:
    etype = event.get("type", "")
    payload = event.get("payload", {}) or {}

    if etype == "log":
        return payload.get("line") or None
    if etype == "console":
        return payload.get("message") or None
    if etype == "nodes":
        names = ", ".join(node.get("id", "?") for node in payload.get("nodes", [])) or "-"
        return f"nodes_changed active={payload.get('active_node_id') or '-'} nodes={names}"
    if etype == "node_state":
        return f"node_state node_id={payload.get('node_id', '')} state={payload.get('state', '')}"
    if etype == "auth_invalidated":
        return f"auth_invalidated node_id={payload.get('node_id', '')} reason={payload.get('reason', '')}"
    if etype == "status":
        return "\n".join(
            "status "
            f"node_id={item['node_id']} state={item['state']} logged_in={item['logged_in']} "
            f"cycles={item['cycles_run']} removed={item['apps_removed']} last_error={item['last_error'] or '-'}"
            for item in payload.get("nodes", [])
        ) or "status no_nodes"
    return None


def _read_commands(controller: AgentController, done: threading.Event) -> None:
    for line in sys.stdin:
        if not handle_command(controller, line):
            break
    done.set()


def main() -> int:
    cfg = load_config()
    logger = setup_logging(get_log_dir(), cfg.log_level, json_console=cfg.json_console_logs)

    events: queue.Queue = queue.Queue()
    controller = AgentController(cfg, events, logger)
    done = threading.Event()

    def _shutdown(*_args) -> None:
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _shutdown)

    controller.start()
    print(f"fluxwatch_started scan_ips={','.join(cfg.scan_ips) or '-'} {HELP_TEXT}", flush=True)
    threading.Thread(target=_read_commands, args=(controller, done), name="fluxwatch-stdin", daemon=True).start()

    while not done.is_set():
        try:
            event = events.get(timeout=1)
        except queue.Empty:
            continue
        text = format_event(event)
        if text:
            print(text, flush=True)

    print("fluxwatch_stopping", flush=True)
    controller.stop()
    while not events.empty():
        text = format_event(events.get_nowait())
        if text:
            print(text, flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
