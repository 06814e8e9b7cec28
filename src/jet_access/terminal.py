"""
Local terminal handling for interactive sessions.

Provides:
- RawTerminal: scoped raw mode, restored exactly once
- LocalTerminal: interactivity check, viewport size, raw mode, resize watching
- PTY request parameters (TERM_TYPE, PTY_MODES, DEFAULT_SIZE)
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from typing import IO, Any, Callable, Iterator

import asyncssh

log = logging.getLogger(__name__)

TERM_TYPE = "xterm-256color"

PTY_MODES: dict[int, int] = {
    asyncssh.PTY_ECHO: 1,
    asyncssh.PTY_OP_ISPEED: 14400,
    asyncssh.PTY_OP_OSPEED: 14400,
}

DEFAULT_SIZE = (80, 24)


class RawTerminal:
    """
    Puts a terminal file descriptor into raw mode for the duration of a block.

    Failing to enter raw mode is logged and tolerated; the session simply
    runs in cooked mode. The saved mode is restored at most once.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._saved: list[Any] | None = None
        self.restore_count = 0

    @property
    def active(self) -> bool:
        return self._saved is not None

    def __enter__(self) -> "RawTerminal":
        try:
            self._saved = termios.tcgetattr(self._fd)
            tty.setraw(self._fd)
        except (termios.error, OSError) as e:
            log.warning("Could not put terminal into raw mode: %s", e)
            # setraw may have failed after tcgetattr succeeded; keep the
            # saved mode so it is still restored
        return self

    def __exit__(self, *args: Any) -> None:
        self.restore()

    def restore(self) -> None:
        """Restore the saved terminal mode (no-op after the first call)."""
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        try:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, saved)
        except (termios.error, OSError) as e:
            log.warning("Could not restore terminal mode: %s", e)
        self.restore_count += 1


class LocalTerminal:
    """The operator's terminal: decides whether a PTY is requested and its size."""

    def __init__(self, stream: IO[Any] | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdin

    def fileno(self) -> int | None:
        try:
            return self._stream.fileno()
        except (AttributeError, ValueError, OSError):
            return None

    def is_interactive(self) -> bool:
        """True when the input stream is a terminal."""
        try:
            return bool(self._stream.isatty())
        except (AttributeError, ValueError):
            return False

    def query_size(self) -> tuple[int, int]:
        """Raw viewport query; raises OSError when there is no terminal."""
        fd = self.fileno()
        if fd is None:
            raise OSError("stream has no file descriptor")
        size = os.get_terminal_size(fd)
        return size.columns, size.lines

    def size(self) -> tuple[int, int]:
        """Viewport as (columns, rows), falling back to 80x24."""
        try:
            columns, rows = self.query_size()
        except (OSError, ValueError) as e:
            log.debug("Terminal size unavailable (%s), using %dx%d", e, *DEFAULT_SIZE)
            return DEFAULT_SIZE
        if columns <= 0 or rows <= 0:
            return DEFAULT_SIZE
        return columns, rows

    def raw_mode(self) -> RawTerminal:
        fd = self.fileno()
        assert fd is not None, "raw mode requires a terminal with a file descriptor"
        return RawTerminal(fd)

    @contextmanager
    def watch_resize(self, on_resize: Callable[[int, int], None]) -> Iterator[None]:
        """
        Call on_resize(columns, rows) whenever the terminal is resized.

        Does nothing where SIGWINCH cannot be watched (no such signal, or
        not running in the main thread).
        """
        loop = asyncio.get_running_loop()
        sigwinch = getattr(signal, "SIGWINCH", None)

        def handle() -> None:
            on_resize(*self.size())

        installed = False
        if sigwinch is not None:
            try:
                loop.add_signal_handler(sigwinch, handle)
                installed = True
            except (NotImplementedError, RuntimeError, ValueError) as e:
                log.debug("Terminal resize forwarding unavailable: %s", e)

        try:
            yield
        finally:
            if installed:
                loop.remove_signal_handler(sigwinch)
