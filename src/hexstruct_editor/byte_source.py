"""Random-access byte I/O on the file being edited."""

from __future__ import annotations

import logging
import os
from typing import IO, TYPE_CHECKING, Any, TypeAlias

import numpy as np

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from numpy import ndarray as NDArray
else:
    NDArray: TypeAlias = Any

ROW_BYTES = 16


class ShortRead(OSError):
    """Raised when fewer bytes than requested are available."""


class ShortWrite(OSError):
    """Raised when a byte could not be written completely."""


class ByteSource:
    """File opened read-only that upgrades itself to read-write on first edit."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Open ``path`` for reading; raises ``OSError`` if it cannot be opened."""
        self.path = os.fspath(path)
        self._fh: IO[bytes] = open(self.path, "rb")
        self._writable = False

    def __enter__(self) -> ByteSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying file handle."""
        if not self._fh.closed:
            self._fh.close()

    @property
    def writable(self) -> bool:
        return self._writable

    def length(self) -> int:
        """Return the current file length in bytes."""
        return self._fh.seek(0, os.SEEK_END)

    def read(self, offset: int, length: int) -> bytes:
        """Return exactly ``length`` bytes starting at ``offset``."""
        if offset < 0 or length < 0:
            msg = f"Invalid read of {length} bytes at {offset:#x}"
            raise ShortRead(msg)
        self._fh.seek(offset)
        data = self._fh.read(length)
        if len(data) < length:
            raise ShortRead(f"Short read at {offset:#x}")
        return data

    def read_u8(self, offset: int) -> int:
        """Return the byte stored at ``offset``."""
        return self.read(offset, 1)[0]

    def read_rows(self, start: int, end: int) -> NDArray:
        """Return ``[start, end)`` as a ``(rows, 16)`` uint8 block.

        ``start`` must be row aligned. The trailing partial row, if any, is
        padded with zeros; callers use ``end`` to know which cells are real.
        """
        count = max(0, end - start)
        rows = (count + ROW_BYTES - 1) // ROW_BYTES
        if rows == 0:
            return np.zeros((0, ROW_BYTES), dtype=np.uint8)
        buf = bytearray(rows * ROW_BYTES)
        buf[:count] = self.read(start, count)
        return np.frombuffer(buf, dtype=np.uint8).reshape(rows, ROW_BYTES)

    def _ensure_writable(self) -> None:
        if self._writable:
            return
        logger.debug("Reopening %s for writing", self.path)
        fh = open(self.path, "r+b")
        self._fh.close()
        self._fh = fh
        self._writable = True

    def write_single_byte(self, offset: int, value: int) -> None:
        """Overwrite the byte at ``offset`` with ``value`` and flush."""
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Byte value out of range: {value}")
        if not 0 <= offset < self.length():
            raise ShortWrite(f"Write beyond end of file at {offset:#x}")
        self._ensure_writable()
        self._fh.seek(offset)
        if self._fh.write(bytes((value,))) != 1:
            raise ShortWrite(f"Short write at {offset:#x}")
        self._fh.flush()
