"""Raw key input read on the asyncio loop."""

from __future__ import annotations

import asyncio
import os
import sys
import termios
import tty
from typing import Iterable, Protocol

_SEQUENCES = {
    "\x1b[A": "up",
    "\x1b[B": "down",
    "\x1b[C": "right",
    "\x1b[D": "left",
    "\x1bOA": "up",
    "\x1bOB": "down",
}

_SINGLE = {
    "\r": "enter",
    "\n": "enter",
    "\x1b": "escape",
    "\x7f": "backspace",
    "\x08": "backspace",
    "\t": "tab",
    "\x03": "ctrl-c",
    "\x15": "ctrl-u",
}


def decode_keys(data: str) -> list[str]:
    """Split a chunk of terminal input into key names or literal characters."""

    keys: list[str] = []
    index = 0
    while index < len(data):
        for sequence, name in _SEQUENCES.items():
            if data.startswith(sequence, index):
                keys.append(name)
                index += len(sequence)
                break
        else:
            char = data[index]
            keys.append(_SINGLE.get(char, char))
            index += 1
    return keys


class KeySource(Protocol):
    async def get(self) -> str:
        ...


class TerminalKeys:
    """Puts stdin in cbreak mode and feeds decoded keys into a queue.

    Use as a context manager inside a running loop; leaving the context
    restores the terminal attributes before anything else touches stdin.
    """

    def __init__(self, fd: int | None = None) -> None:
        self._fd = sys.stdin.fileno() if fd is None else fd
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._saved: list | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def __enter__(self) -> "TerminalKeys":
        self._saved = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._fd, self._on_readable)
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._loop is not None:
            self._loop.remove_reader(self._fd)
            self._loop = None
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)
            self._saved = None

    def _on_readable(self) -> None:
        data = os.read(self._fd, 1024).decode("utf-8", errors="ignore")
        for key in decode_keys(data):
            self._queue.put_nowait(key)

    async def get(self) -> str:
        return await self._queue.get()


class ScriptedKeys:
    """Key source for tests: replays keys, then blocks forever."""

    def __init__(self, keys: Iterable[str] = ()) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        for key in keys:
            self._queue.put_nowait(key)

    def __enter__(self) -> "ScriptedKeys":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def feed(self, *keys: str) -> None:
        for key in keys:
            self._queue.put_nowait(key)

    async def get(self) -> str:
        return await self._queue.get()


__all__ = ["KeySource", "ScriptedKeys", "TerminalKeys", "decode_keys"]
