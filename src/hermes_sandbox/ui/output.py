"""Non-interactive renderings of the session list: table, JSON and YAML."""

from __future__ import annotations

import json
from typing import Sequence

import yaml
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..sessions import ProviderType, Session
from .display import format_relative_time, status_color, status_text, truncate

SessionKey = tuple[ProviderType, str]

PROMPT_WIDTH = 50

NO_RUNNING = "No running hermes sessions. Use --all to see all sessions."
NO_SESSIONS = "No hermes sessions found."


def filter_sessions(sessions: Sequence[Session], show_all: bool) -> list[Session]:
    if show_all:
        return list(sessions)
    return [session for session in sessions if session.is_running]


def sessions_to_json(sessions: Sequence[Session]) -> str:
    return json.dumps([session.public_dict() for session in sessions], indent=2)


def sessions_to_yaml(sessions: Sequence[Session]) -> str:
    if not sessions:
        return "[]"
    return yaml.safe_dump(
        [session.public_dict() for session in sessions],
        sort_keys=False,
        allow_unicode=True,
    ).rstrip("\n")


def build_table(sessions: Sequence[Session], *, selected: SessionKey | None = None) -> Table:
    table = Table(box=None, header_style="bold", pad_edge=False)
    for column in ("NAME", "STATUS", "AGENT", "REPO", "CREATED", "PROMPT"):
        table.add_column(column, no_wrap=True)
    for session in sessions:
        agent = f"{session.agent.value}/{session.model}" if session.model else session.agent.value
        table.add_row(
            session.name,
            Text(status_text(session), style=status_color(session)),
            agent,
            session.repo,
            format_relative_time(session.created) if session.created else "unknown",
            truncate(session.prompt, PROMPT_WIDTH),
            style="reverse" if selected is not None and session.key == selected else None,
        )
    return table


def print_sessions(console: Console, sessions: Sequence[Session], *, output: str, show_all: bool) -> None:
    """Render ``sessions`` for ``hermes sessions -o table|json|yaml``."""

    shown = filter_sessions(sessions, show_all)
    if output == "json":
        console.print(sessions_to_json(shown), markup=False, highlight=False, soft_wrap=True)
        return
    if output == "yaml":
        console.print(sessions_to_yaml(shown), markup=False, highlight=False, soft_wrap=True)
        return

    if not shown:
        console.print(NO_SESSIONS if show_all else NO_RUNNING)
        return
    console.print()
    console.print(build_table(shown))
    console.print()
    if not show_all and len(sessions) > len(shown):
        console.print(
            f"Showing {len(shown)} running session(s). "
            f"Use --all to see all {len(sessions)} session(s)."
        )
        console.print()


__all__ = [
    "NO_RUNNING",
    "NO_SESSIONS",
    "build_table",
    "filter_sessions",
    "print_sessions",
    "sessions_to_json",
    "sessions_to_yaml",
]
