"""Formatting helpers shared by the TUI and the CLI output modes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..sessions import Session, SessionStatus


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative_time(timestamp: str, *, now: Optional[datetime] = None) -> str:
    created = _parse_timestamp(timestamp)
    if created is None:
        return timestamp
    now = now or datetime.now(timezone.utc)
    minutes = int((now - created).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def status_text(session: Session) -> str:
    if session.status is SessionStatus.EXITED:
        if session.exit_code == 0:
            return "complete"
        if session.exit_code is not None:
            return f"failed ({session.exit_code})"
        return "exited"
    return session.status.value


_ICONS = {
    SessionStatus.RUNNING: "●",
    SessionStatus.STOPPED: "■",
    SessionStatus.UNKNOWN: "?",
}

_COLORS = {
    SessionStatus.RUNNING: "green",
    SessionStatus.STOPPED: "yellow",
    SessionStatus.UNKNOWN: "bright_black",
}


def status_icon(session: Session) -> str:
    if session.status is SessionStatus.EXITED:
        return "✓" if session.exit_code == 0 else "✗"
    return _ICONS[session.status]


def status_color(session: Session) -> str:
    if session.status is SessionStatus.EXITED:
        return "blue" if session.exit_code == 0 else "red"
    return _COLORS[session.status]


def truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


__all__ = [
    "format_relative_time",
    "status_color",
    "status_icon",
    "status_text",
    "truncate",
]
