"""Scalar counter files held open for the lifetime of a collector.

sysfs attribute files report their current value on every read from
offset zero, so a handle is opened once at discovery and re-read each tick
instead of re-opening the path.
"""

from __future__ import annotations

import os
from pathlib import Path

from .errors import ParseError, UpdateIOError

# Enough for the 20 digits of 2**64 - 1 plus a newline.
READ_SIZE = 22

UINT64_MAX = 2**64 - 1


class ScalarFile:
    """An open, read-only handle to a single-value sysfs file."""

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        # Raises OSError here, during discovery, if the file is unusable.
        self._fd: int | None = os.open(self._path, os.O_RDONLY)

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._fd is None

    def read_text(self) -> str:
        """Return the raw current contents (at most READ_SIZE bytes)."""
        if self._fd is None:
            raise UpdateIOError(self._path, "file is closed")
        try:
            data = os.pread(self._fd, READ_SIZE, 0)
        except OSError as e:
            raise UpdateIOError(self._path, e.strerror or str(e)) from e
        return data.decode("ascii", errors="replace")

    def read_uint(self) -> int:
        """Read the current value as an unsigned 64-bit integer."""
        return parse_uint(self.read_text(), self._path)

    def close(self) -> None:
        """Release the descriptor. Safe to call more than once."""
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)

    def __enter__(self) -> ScalarFile:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ScalarFile({self._path!r})"


def parse_uint(text: str, path: str = "<unknown>") -> int:
    """Parse sysfs counter text such as ``"123456\\n"``.

    Surrounding whitespace is ignored. Signs, digit separators, empty
    content and values wider than 64 bits are rejected with ParseError.
    """
    stripped = text.strip()
    if not stripped or not (stripped.isascii() and stripped.isdigit()):
        raise ParseError(path, text)
    value = int(stripped)
    if value > UINT64_MAX:
        raise ParseError(path, text)
    return value


def read_string(path: str | Path) -> str:
    """Read a short text attribute such as a zone ``name``, minus the newline."""
    return Path(path).read_text().rstrip("\n")
