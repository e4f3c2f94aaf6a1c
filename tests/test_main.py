"""Tests for the headless runner's command parsing and event rendering."""

import pytest

from fluxwatch.main import HELP_TEXT, format_event, handle_command


class RecordingController:
    def __init__(self):
        self.calls = []

    def set_credential(self, node_id, logged_in, token=None):
        self.calls.append(("set_credential", node_id, logged_in, token))

    def rediscover(self):
        self.calls.append(("rediscover",))

    def run_cycle_now(self, node_id):
        self.calls.append(("run_cycle_now", node_id))

    def request_status(self):
        self.calls.append(("request_status",))

    def emit(self, event_type, payload=None):
        self.calls.append(("emit", event_type, payload))


class TestHandleCommand:
    @pytest.mark.parametrize(
        "line,expected",
        [
            ("login IP1-node01 abc123\n", ("set_credential", "IP1-node01", True, "abc123")),
            ("LOGOUT IP1-node01", ("set_credential", "IP1-node01", False, None)),
            ("scan", ("rediscover",)),
            ("run IP2-node03", ("run_cycle_now", "IP2-node03")),
            ("status", ("request_status",)),
        ],
    )
    def test_commands_map_to_controller(self, line, expected):
        controller = RecordingController()

        assert handle_command(controller, line) is True
        assert controller.calls == [expected]

    def test_quit_stops_reading(self):
        controller = RecordingController()

        assert handle_command(controller, "quit") is False
        assert controller.calls == []

    def test_blank_line_is_ignored(self):
        controller = RecordingController()

        assert handle_command(controller, "   \n") is True
        assert controller.calls == []

    @pytest.mark.parametrize("line", ["login IP1-node01", "run", "bogus", "scan now"])
    def test_malformed_commands_print_help(self, line):
        controller = RecordingController()

        handle_command(controller, line)

        assert controller.calls == [("emit", "console", {"message": HELP_TEXT})]


class TestFormatEvent:
    def test_log_line_passes_through(self):
        assert format_event({"type": "log", "payload": {"line": "[01.01.2025 10:00][MAIN] hi"}}) == "[01.01.2025 10:00][MAIN] hi"

    def test_nodes_event(self):
        event = {"type": "nodes", "payload": {"nodes": [{"id": "IP1-node01"}, {"id": "IP1-node02"}], "active_node_id": "IP1-node01"}}

        assert format_event(event) == "nodes_changed active=IP1-node01 nodes=IP1-node01, IP1-node02"

    def test_status_event_lists_each_node(self):
        item = {
            "node_id": "IP1-node01",
            "state": "running",
            "logged_in": True,
            "cycles_run": 3,
            "apps_removed": 1,
            "last_error": "",
        }

        text = format_event({"type": "status", "payload": {"nodes": [item]}})

        assert text == "status node_id=IP1-node01 state=running logged_in=True cycles=3 removed=1 last_error=-"
        assert format_event({"type": "status", "payload": {"nodes": []}}) == "status no_nodes"

    def test_unknown_and_empty_events_render_nothing(self):
        assert format_event({"type": "mystery", "payload": {}}) is None
        assert format_event({"type": "log", "payload": {}}) is None
