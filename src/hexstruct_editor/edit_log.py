"""Crash-consistent, append-only undo/redo log.

File layout (all little-endian)::

    0x00  header   4B magic "undo", u8 version 0, 3B reserved,
                   u64 position (16-aligned, >= 0x10, <= file length)
    0x10  records  16B each: u64 address, u8 old, u8 new, 6B reserved

A new edit is written at ``position``, the file is truncated right behind
it and ``position`` advances by one slot.  Undo steps ``position`` back one
slot and reports the old byte stored there; redo reports the new byte at
``position`` and steps forward.  The in-memory position only becomes durable
once :meth:`EditLog.settle` rewrites the header.

Callers follow one of three sequences::

    log.enter(addr, old, new); source.write_single_byte(addr, new); log.settle()
    addr, old = log.undo();    source.write_single_byte(addr, old); log.settle()
    addr, new = log.redo();    source.write_single_byte(addr, new); log.settle()

If either of the first two steps fails the log is still consistent: a new
edit is logged before the file is touched, so a failed byte write can be
redone from the log.  Only a failing ``settle`` leaves header and body out of
step, which is reported as :class:`LogInconsistentError`.
"""

from __future__ import annotations

import collections.abc as cabc
import logging
import os
from dataclasses import dataclass
from typing import IO

import numpy as np

logger = logging.getLogger(__name__)

MAGIC = b"undo"
VERSION = 0
SLOT_SIZE = 0x10
FIRST_SLOT = SLOT_SIZE

HEADER_DTYPE = np.dtype(
    [
        ("magic", "S4"),
        ("version", "u1"),
        ("reserved", "V3"),
        ("position", "<u8"),
    ]
)
RECORD_DTYPE = np.dtype(
    [
        ("address", "<u8"),
        ("old_value", "u1"),
        ("new_value", "u1"),
        ("reserved", "V6"),
    ]
)
POSITION_OFFSET = HEADER_DTYPE.fields["position"][1]


class EditLogError(RuntimeError):
    """Raised when a log operation fails; the log itself stays consistent."""


class CorruptLogError(EditLogError):
    """Raised at open time for a file that is not a usable edit log."""


class LogInconsistentError(EditLogError):
    """Raised when the position could not be persisted by ``settle``."""


@dataclass(frozen=True)
class EditRecord:
    """One byte-level modification."""

    address: int
    old_value: int
    new_value: int

    def pack(self) -> bytes:
        """Return the 16-byte on-disk form of this record."""
        rec = np.zeros(1, dtype=RECORD_DTYPE)
        rec["address"] = self.address
        rec["old_value"] = self.old_value
        rec["new_value"] = self.new_value
        return rec.tobytes()

    @classmethod
    def unpack(cls, data: bytes) -> EditRecord:
        """Decode a record from exactly one slot of ``data``."""
        rec = np.frombuffer(data, dtype=RECORD_DTYPE, count=1)[0]
        return cls(
            address=int(rec["address"]),
            old_value=int(rec["old_value"]),
            new_value=int(rec["new_value"]),
        )


def align_up(value: int, alignment: int = SLOT_SIZE) -> int:
    """Round ``value`` up to the next multiple of ``alignment``."""
    return (value + alignment - 1) // alignment * alignment


def pack_header(position: int) -> bytes:
    header = np.zeros(1, dtype=HEADER_DTYPE)
    header["magic"] = MAGIC
    header["version"] = VERSION
    header["position"] = position
    return header.tobytes()


class EditLog:
    """Edit history stored in a single file next to the edited one."""

    def __init__(self, fh: IO[bytes], path: str, position: int, length: int) -> None:
        self._fh = fh
        self.path = path
        self._position = position
        self._length = length

    # -------- opening --------

    @classmethod
    def open(cls, path: str | os.PathLike[str]) -> EditLog:
        """Open the log at ``path``, creating it with a fresh header if empty."""
        name = os.fspath(path)
        fd = os.open(name, os.O_RDWR | os.O_CREAT, 0o644)
        fh = os.fdopen(fd, "r+b")
        try:
            length = fh.seek(0, os.SEEK_END)
            if length == 0:
                return cls._create(fh, name)
            return cls._load(fh, name, length)
        except BaseException:
            fh.close()
            raise

    @classmethod
    def _create(cls, fh: IO[bytes], name: str) -> EditLog:
        fh.seek(0)
        fh.write(pack_header(FIRST_SLOT))
        fh.flush()
        logger.info("Created edit log %s", name)
        return cls(fh, name, FIRST_SLOT, FIRST_SLOT)

    @classmethod
    def _load(cls, fh: IO[bytes], name: str, length: int) -> EditLog:
        fh.seek(0)
        raw = fh.read(HEADER_DTYPE.itemsize)
        if len(raw) < HEADER_DTYPE.itemsize:
            raise CorruptLogError(f"{name}: Truncated header")
        header = np.frombuffer(raw, dtype=HEADER_DTYPE, count=1)[0]
        if bytes(header["magic"]) != MAGIC:
            raise CorruptLogError(f"{name}: Not an undo file")
        version = int(header["version"])
        if version != VERSION:
            raise CorruptLogError(f"{name}: Unsupported version {version}")

        if length % SLOT_SIZE:
            # A torn trailing record is kept, zero-padded, rather than dropped.
            padded = align_up(length)
            logger.debug("Padding %s from %#x to %#x bytes", name, length, padded)
            fh.truncate(padded)
            length = padded

        position = int(header["position"])
        if position % SLOT_SIZE or position < FIRST_SLOT or position > length:
            raise CorruptLogError(f"{name}: Invalid position {position:#x}")
        return cls(fh, name, position, length)

    # -------- state --------

    @property
    def position(self) -> int:
        """Byte offset of the next redo slot (in memory, maybe not settled)."""
        return self._position

    @property
    def end(self) -> int:
        """Byte offset one past the last stored record."""
        return self._length

    def __len__(self) -> int:
        return (self._length - FIRST_SLOT) // SLOT_SIZE

    def can_undo(self) -> bool:
        return self._position > FIRST_SLOT

    def can_redo(self) -> bool:
        return self._position < self._length

    def records(self) -> cabc.Iterator[EditRecord]:
        """Yield every stored record, including those only reachable by redo."""
        for slot in range(FIRST_SLOT, self._length, SLOT_SIZE):
            yield self._read_record(slot)

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self) -> EditLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -------- protocol --------

    def _read_record(self, slot: int) -> EditRecord:
        self._fh.seek(slot)
        data = self._fh.read(SLOT_SIZE)
        if len(data) < SLOT_SIZE:
            raise OSError(f"Short read at {slot:#x}")
        return EditRecord.unpack(data)

    def enter(self, address: int, old: int, new: int) -> None:
        """Record a new edit at the current position, dropping redo history."""
        record = EditRecord(address, old, new)
        try:
            self._fh.seek(self._position)
            if self._fh.write(record.pack()) != SLOT_SIZE:
                raise OSError("Short write")
            self._position += SLOT_SIZE
            self._length = self._position
            self._fh.truncate(self._length)
        except OSError as exc:
            raise EditLogError(f"{exc} (redo may be garbage)") from exc

    def settle(self) -> None:
        """Persist the in-memory position; the only durability commit point."""
        try:
            self._fh.seek(POSITION_OFFSET)
            self._fh.write(self._position.to_bytes(8, "little"))
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except OSError as exc:
            msg = f"{exc} - the log is inconsistent now, proceed with care!"
            raise LogInconsistentError(msg) from exc

    def undo(self) -> tuple[int, int] | None:
        """Step back one record and return its ``(address, old_value)``."""
        if not self.can_undo():
            return None
        slot = self._position - SLOT_SIZE
        try:
            record = self._read_record(slot)
        except OSError as exc:
            raise EditLogError(f"{exc} (log is unchanged)") from exc
        self._position = slot
        return record.address, record.old_value

    def redo(self) -> tuple[int, int] | None:
        """Return ``(address, new_value)`` at the position and step forward."""
        if not self.can_redo():
            return None
        try:
            record = self._read_record(self._position)
        except OSError as exc:
            raise EditLogError(f"{exc} (log is unchanged)") from exc
        self._position += SLOT_SIZE
        return record.address, record.new_value
