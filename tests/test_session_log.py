"""Tests for the session log: history, dispatch, file sink and rotation."""

import re

import pytest

from fluxwatch.session_log import ROTATION_FAILED_MESSAGE, SessionLog

LINE_PATTERN = re.compile(r"^\[\d{2}\.\d{2}\.\d{4} \d{2}:\d{2}\]\[(?P<prefix>[^\]]+)\] (?P<body>.*)$", re.S)


def _file_lines(path):
    return path.read_text(encoding="utf-8").splitlines()


def _fill_until(log: SessionLog, predicate, limit: int = 500) -> None:
    for index in range(limit):
        if predicate():
            return
        log.record("TEST", f"entry {index:04d} " + "x" * 40)
    raise AssertionError("condition not met while filling log")


class TestRecord:
    def test_line_format_and_redaction(self, tmp_path):
        log = SessionLog(tmp_path / "session.log")

        line = log.record("API-IP1-node01", "Running Apps:", {"zelidauth": "secret", "status": "success"})

        match = LINE_PATTERN.match(line)
        assert match
        assert match.group("prefix") == "API-IP1-node01"
        assert match.group("body") == 'Running Apps: {"zelidauth":"[REDACTED]","status":"success"}'
        assert "secret" not in log.history()[0]
        log.close()
        assert "secret" not in (tmp_path / "session.log").read_text(encoding="utf-8")

    def test_history_is_bounded_oldest_first_out(self, tmp_path):
        log = SessionLog(None, capacity=3)

        for index in range(5):
            log.record("T", f"line {index}")

        assert [line.split("] ")[-1] for line in log.history()] == ["line 2", "line 3", "line 4"]

    def test_entries_reach_history_dispatcher_and_file_in_order(self, tmp_path):
        dispatched = []
        path = tmp_path / "session.log"
        log = SessionLog(path, dispatcher=dispatched.append)

        lines = [log.record("ORDER", f"step {index}") for index in range(20)]
        log.close()

        assert log.history() == lines
        assert dispatched == lines
        file_lines = _file_lines(path)
        assert [line.split("] ", 1)[1] for line in file_lines] == lines
        assert all(line.startswith("[20") and "Z] " in line for line in file_lines)

    def test_debug_is_noop_when_disabled(self, tmp_path):
        dispatched = []
        path = tmp_path / "session.log"
        log = SessionLog(path, debug=False, dispatcher=dispatched.append)

        assert log.record_debug("DBG", {"a": 1}) is None
        log.close()

        assert log.history() == []
        assert dispatched == []
        assert path.read_text(encoding="utf-8") == ""

    def test_debug_renders_indented_json_when_enabled(self):
        log = SessionLog(None, debug=True)

        line = log.record_debug("DBG", {"a": 1})

        assert line.endswith('{\n  "a": 1\n}')

    def test_dispatcher_failure_does_not_break_recording(self):
        def broken(_line):
            raise RuntimeError("ui gone")

        log = SessionLog(None, dispatcher=broken)

        log.record("T", "still recorded")

        assert len(log.history()) == 1

    def test_clear_on_start_truncates(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text("old content\n", encoding="utf-8")

        log = SessionLog(path, clear_on_start=True)
        log.record("T", "fresh")
        log.close()

        lines = _file_lines(path)
        assert len(lines) == 1
        assert lines[0].endswith("[T] fresh")

    def test_append_by_default(self, tmp_path):
        path = tmp_path / "session.log"
        path.write_text("old content\n", encoding="utf-8")

        log = SessionLog(path)
        log.record("T", "fresh")
        log.close()

        assert _file_lines(path)[0] == "old content"


class TestRotation:
    def test_single_rotation_starts_new_file_with_marker(self, tmp_path):
        path = tmp_path / "session.log"
        log = SessionLog(path, max_file_bytes=1000)
        handler = log.file_handler

        _fill_until(log, lambda: handler.rotations == 1)
        log.close()

        backup = handler.backup_path
        assert backup == tmp_path / "session.log.old"
        assert backup.exists()
        assert handler.rotations == 1
        new_lines = _file_lines(path)
        assert "Log file reached maximum size and was rotated" in new_lines[0]
        assert "session.log.old" in new_lines[0]
        assert new_lines[1].split("] ", 1)[1] == log.history()[-1]
        assert len(new_lines) == 2

    def test_second_rotation_replaces_previous_backup(self, tmp_path):
        path = tmp_path / "session.log"
        log = SessionLog(path, max_file_bytes=1000)
        handler = log.file_handler

        _fill_until(log, lambda: handler.rotations == 1)
        first_backup_head = _file_lines(tmp_path / "session.log.old")[0]
        _fill_until(log, lambda: handler.rotations == 2)
        log.close()

        backup_lines = _file_lines(tmp_path / "session.log.old")
        assert "rotated" not in first_backup_head
        assert "Log file reached maximum size and was rotated" in backup_lines[0]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["session.log", "session.log.old"]

    def test_failed_rotation_falls_back_to_same_file(self, tmp_path):
        path = tmp_path / "session.log"
        log = SessionLog(path, max_file_bytes=300)
        handler = log.file_handler

        def refuse(_source, _dest):
            raise PermissionError("file busy")

        handler.rotator = refuse
        _fill_until(log, lambda: ROTATION_FAILED_MESSAGE in path.read_text(encoding="utf-8"))
        last = log.record("T", "after failure")
        log.close()

        assert not (tmp_path / "session.log.old").exists()
        assert not handler.sink_disabled
        assert _file_lines(path)[-1].split("] ", 1)[1] == last

    def test_unrecoverable_rotation_disables_file_only(self, tmp_path, monkeypatch):
        path = tmp_path / "session.log"
        log = SessionLog(path, max_file_bytes=300)
        handler = log.file_handler

        def refuse(_source, _dest):
            raise PermissionError("file busy")

        def cannot_open():
            raise OSError("disk gone")

        handler.rotator = refuse
        _fill_until(log, lambda: path.stat().st_size >= 300)
        monkeypatch.setattr(handler, "_open", cannot_open)
        size_before = path.stat().st_size

        log.record("T", "triggers rotation")
        log.record("T", "history only")

        assert handler.sink_disabled
        assert path.stat().st_size == size_before
        assert log.history()[-1].endswith("[T] history only")
        log.close()

    @pytest.mark.parametrize("capacity", [1, 2])
    def test_rotation_does_not_touch_history(self, tmp_path, capacity):
        log = SessionLog(tmp_path / "session.log", capacity=capacity, max_file_bytes=200)

        _fill_until(log, lambda: log.file_handler.rotations >= 1)

        assert len(log.history()) == capacity
        log.close()
