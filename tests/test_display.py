from __future__ import annotations

import io
import json
from datetime import datetime, timezone

import yaml
from rich.console import Console

from hermes_sandbox.sessions import Session
from hermes_sandbox.ui import (
    build_table,
    decode_keys,
    format_relative_time,
    print_sessions,
    sessions_to_json,
    sessions_to_yaml,
    status_color,
    status_icon,
    status_text,
    truncate,
)

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def _session(session_id: str, status: str = "running", exit_code: int | None = None, **extra) -> Session:
    return Session(
        id=session_id,
        name=f"hermes-{session_id}",
        branch=session_id,
        repo="acme/widgets",
        prompt="Fix   the login\nflow so that users can sign in with SSO again",
        status=status,
        exit_code=exit_code,
        created="2025-01-10T11:00:00+00:00",
        **extra,
    )


def _console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=160, color_system=None, force_terminal=False), buffer


def test_relative_time_buckets() -> None:
    assert format_relative_time("2025-01-10T11:59:30+00:00", now=NOW) == "just now"
    assert format_relative_time("2025-01-10T11:15:00Z", now=NOW) == "45m ago"
    assert format_relative_time("2025-01-10T07:00:00+00:00", now=NOW) == "5h ago"
    assert format_relative_time("2025-01-07T12:00:00", now=NOW) == "3d ago"
    assert format_relative_time("yesterday", now=NOW) == "yesterday"


def test_status_rendering() -> None:
    assert status_text(_session("a", "exited", 0)) == "complete"
    assert status_text(_session("a", "exited", 1)) == "failed (1)"
    assert status_text(_session("a", "stopped")) == "stopped"
    assert status_color(_session("a", "exited", 0)) == "blue"
    assert status_color(_session("a", "exited", 2)) == "red"
    assert status_color(_session("a")) == "green"
    assert status_icon(_session("a", "exited", 2)) == "✗"


def test_truncate() -> None:
    assert truncate("a  b\n c", 10) == "a b c"
    assert truncate("abcdefghij", 6) == "abc..."


def test_table_hides_finished_sessions_unless_all() -> None:
    sessions = [_session("a"), _session("b", "exited", 1)]
    console, buffer = _console()

    print_sessions(console, sessions, output="table", show_all=False)

    text = buffer.getvalue()
    assert "hermes-a" in text
    assert "hermes-b" not in text
    assert "Showing 1 running session(s). Use --all to see all 2 session(s)." in text

    console, buffer = _console()
    print_sessions(console, sessions, output="table", show_all=True)

    text = buffer.getvalue()
    assert "failed (1)" in text
    assert "NAME" in text and "PROMPT" in text
    assert "Use --all" not in text


def test_empty_table_messages() -> None:
    console, buffer = _console()
    print_sessions(console, [_session("a", "stopped")], output="table", show_all=False)
    assert "No running hermes sessions. Use --all to see all sessions." in buffer.getvalue()

    console, buffer = _console()
    print_sessions(console, [], output="table", show_all=True)
    assert "No hermes sessions found." in buffer.getvalue()


def test_json_and_yaml_outputs() -> None:
    sessions = [_session("a"), _session("b", "exited", 0)]
    console, buffer = _console()

    print_sessions(console, sessions, output="json", show_all=True)

    payload = json.loads(buffer.getvalue())
    assert [item["id"] for item in payload] == ["a", "b"]
    assert payload[1]["exitCode"] == 0
    assert json.loads(sessions_to_json([])) == []

    assert sessions_to_yaml([]) == "[]"
    loaded = yaml.safe_load(sessions_to_yaml(sessions[:1]))
    assert loaded[0]["name"] == "hermes-a"
    assert list(loaded[0])[:3] == ["id", "name", "branch"]


def test_table_marks_selected_row() -> None:
    sessions = [_session("a"), _session("b")]
    table = build_table(sessions, selected=sessions[1].key)
    assert table.row_count == 2
    assert table.rows[1].style == "reverse"
    assert table.rows[0].style is None


def test_decode_keys() -> None:
    assert decode_keys("\x1b[A\x1b[Bq") == ["up", "down", "q"]
    assert decode_keys("hi\r") == ["h", "i", "enter"]
    assert decode_keys("\x1b") == ["escape"]
    assert decode_keys("\x7f\x03\x15\t") == ["backspace", "ctrl-c", "ctrl-u", "tab"]
