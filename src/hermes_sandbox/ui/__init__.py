"""Terminal UI and non-interactive renderers."""

from .app import AppDefaults, HermesApp
from .display import format_relative_time, status_color, status_icon, status_text, truncate
from .keys import ScriptedKeys, TerminalKeys, decode_keys
from .output import build_table, print_sessions, sessions_to_json, sessions_to_yaml

__all__ = [
    "AppDefaults",
    "HermesApp",
    "ScriptedKeys",
    "TerminalKeys",
    "build_table",
    "decode_keys",
    "format_relative_time",
    "print_sessions",
    "sessions_to_json",
    "sessions_to_yaml",
    "status_color",
    "status_icon",
    "status_text",
    "truncate",
]
