"""Cursor and scrolling window over the file, plus screen hit-testing.

Screen layout of one row (columns are zero-based)::

    0               16   19                                              71 73
    |address (16)   | │ |xx xx xx xx  xx xx xx xx   xx xx xx xx  xx xx xx xx │ |chars (16)|

The last two display rows are reserved for a separator and the status or
command line.  All navigation is total: targets outside the file clamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ROW_BYTES = 16
RESERVED_ROWS = 2
SCROLL_BYTES = 0x100

ADDRESS_COLUMN = 0
ADDRESS_WIDTH = 16
HEX_COLUMN = 19
HEX_WIDTH = 52
CHAR_COLUMN = 73
LINE_WIDTH = CHAR_COLUMN + ROW_BYTES

WHEEL_UP = 64
WHEEL_DOWN = 65
MOTION_FLAG = 32
PRIMARY_BUTTON = 0


def clamp(v: int, lo: int, hi: int) -> int:
    """Clamp ``v`` to the inclusive ``[lo, hi]`` range."""
    return lo if v < lo else hi if v > hi else v


def align_down(value: int) -> int:
    return value - value % ROW_BYTES


def align_up(value: int) -> int:
    return align_down(value + ROW_BYTES - 1)


def byte_to_column(byte: int) -> int:
    """Return the hex-grid column (relative to the grid) of ``byte``'s first digit."""
    if byte >= 12:
        return byte * 3 + 4
    if byte >= 8:
        return byte * 3 + 3
    if byte >= 4:
        return byte * 3 + 1
    return byte * 3


def column_to_byte(column: int) -> int | None:
    """Return the byte whose digits cover hex-grid ``column``; gaps give ``None``."""
    for byte in range(ROW_BYTES):
        start = byte_to_column(byte)
        if start <= column <= start + 1:
            return byte
    return None


@dataclass(frozen=True)
class PointerEvent:
    """A decoded mouse report with zero-based screen coordinates."""

    button: int
    column: int
    row: int
    pressed: bool = True


class Viewport:
    """Owns ``base_offset`` (window top) and ``cursor`` for one file."""

    def __init__(self, file_length: int = 0, height: int = 25) -> None:
        self.file_length = file_length
        self.height = height
        self.base_offset = 0
        self.cursor = 0
        self.nibble = 0

    # -------- geometry --------

    @property
    def visible_rows(self) -> int:
        return max(0, self.height - RESERVED_ROWS)

    @property
    def page_size(self) -> int:
        return self.visible_rows * ROW_BYTES

    @property
    def end_offset(self) -> int:
        """One past the last visible byte."""
        return min(self.file_length, self.base_offset + self.page_size)

    @property
    def last_offset(self) -> int:
        """Highest valid cursor position (0 for an empty file)."""
        return max(0, self.file_length - 1)

    def cursor_visible(self) -> bool:
        return self.base_offset <= self.cursor < self.end_offset

    def visible_row_offsets(self) -> range:
        return range(self.base_offset, self.end_offset, ROW_BYTES)

    def _tail_base(self) -> int:
        """Window top that shows the last row at the bottom of the screen."""
        return max(0, align_up(self.file_length) - self.page_size)

    # -------- line moves --------

    def up(self) -> None:
        self.nibble = 0
        if self.cursor >= ROW_BYTES:
            if self.cursor < self.base_offset + ROW_BYTES:
                self.base_offset = max(0, self.base_offset - ROW_BYTES)
            self.cursor -= ROW_BYTES

    def down(self) -> None:
        self.nibble = 0
        if self.cursor + ROW_BYTES < self.file_length:
            if self.cursor + ROW_BYTES >= self.end_offset:
                self.base_offset += ROW_BYTES
            self.cursor += ROW_BYTES

    def right(self) -> None:
        self.nibble = 0
        if self.cursor + 1 < self.file_length:
            if self.cursor % ROW_BYTES == ROW_BYTES - 1:
                self.cursor -= ROW_BYTES - 1
                self.down()
            else:
                self.cursor += 1

    def left(self) -> None:
        self.nibble = 0
        if self.cursor > 0:
            if self.cursor % ROW_BYTES == 0:
                self.cursor += ROW_BYTES - 1
                self.up()
            else:
                self.cursor -= 1

    def row_start(self) -> None:
        self.nibble = 0
        self.cursor = align_down(self.cursor)

    def row_end(self) -> None:
        self.nibble = 0
        self.cursor = min(align_down(self.cursor) + ROW_BYTES - 1, self.last_offset)

    # -------- pages and wheel --------

    def page_up(self) -> None:
        self.nibble = 0
        page = self.page_size
        self.cursor = max(0, self.cursor - page)
        self.base_offset = max(0, self.base_offset - page)

    def page_down(self) -> None:
        self.nibble = 0
        page = self.page_size
        self.cursor = min(self.cursor + page, self.last_offset)
        self.base_offset += page
        if self.base_offset + page >= self.file_length:
            self.base_offset = self._tail_base()

    def scroll_up(self, amount: int = SCROLL_BYTES) -> None:
        """Move the window up without moving the cursor unless it falls off."""
        if self.visible_rows == 0:
            return
        self.base_offset = max(0, self.base_offset - amount)
        end = self.end_offset
        if self.cursor >= end:
            self.cursor = clamp(end - ROW_BYTES + self.cursor % ROW_BYTES, 0, self.last_offset)

    def scroll_down(self, amount: int = SCROLL_BYTES) -> None:
        """Move the window down, stopping once the last row is on screen."""
        if self.visible_rows == 0:
            return
        window_end = self.base_offset + self.page_size
        if window_end >= self.file_length:
            return
        if window_end + amount >= self.file_length:
            self.base_offset = self._tail_base()
        else:
            self.base_offset += amount
        if self.cursor < self.base_offset:
            self.cursor = min(self.base_offset + self.cursor % ROW_BYTES, self.last_offset)

    # -------- goto --------

    def reveal(self, recenter: bool) -> None:
        """Adjust ``base_offset`` so the cursor is on screen.

        Does nothing if it already is.  With ``recenter`` the cursor row is
        centred, except near the start (window pinned to 0) and the end
        (last row at the bottom).  Otherwise the window moves just far enough
        to show the cursor on its first or last row.
        """
        page = self.page_size
        cursor_row = align_down(self.cursor)
        if recenter:
            if self.cursor_visible():
                return
            half = align_down(page // 2)
            self.base_offset = max(0, cursor_row - half)
            if self.base_offset + page > self.file_length:
                self.base_offset = self._tail_base()
        elif self.cursor < self.base_offset:
            self.base_offset = cursor_row
        elif self.cursor >= self.end_offset:
            self.base_offset = max(0, cursor_row + ROW_BYTES - page)

    def goto(self, target: int, recenter: bool = True) -> None:
        self.nibble = 0
        self.cursor = clamp(target, 0, self.last_offset)
        self.reveal(recenter)

    def resize(self, height: int, file_length: int | None = None) -> None:
        """Adopt a new display height (and file length) and keep the cursor shown."""
        self.height = height
        if file_length is not None:
            self.file_length = file_length
        self.cursor = clamp(self.cursor, 0, self.last_offset)
        self.base_offset = min(align_down(self.base_offset), self._tail_base())
        self.reveal(recenter=False)

    # -------- screen coordinates --------

    def offset_to_position(self, offset: int, field: str = "hex") -> tuple[int, int] | None:
        """Return ``(column, row)`` of ``offset`` in ``field``, or ``None`` if off screen."""
        if not self.base_offset <= offset < self.end_offset:
            return None
        row = (offset - self.base_offset) // ROW_BYTES
        byte = offset % ROW_BYTES
        if field == "hex":
            return HEX_COLUMN + byte_to_column(byte), row
        if field == "char":
            return CHAR_COLUMN + byte, row
        if field == "address":
            return ADDRESS_COLUMN, row
        raise ValueError(f"Unknown field {field!r}")

    def position_to_offset(self, column: int, row: int) -> int | None:
        """Return the file offset under a screen cell, or ``None`` if there is none."""
        if not 0 <= row < self.visible_rows:
            return None
        if HEX_COLUMN <= column < HEX_COLUMN + HEX_WIDTH:
            byte = column_to_byte(column - HEX_COLUMN)
        elif CHAR_COLUMN <= column < CHAR_COLUMN + ROW_BYTES:
            byte = column - CHAR_COLUMN
        else:
            byte = None
        if byte is None:
            return None
        offset = self.base_offset + row * ROW_BYTES + byte
        return offset if offset < self.file_length else None

    def pointer(self, event: PointerEvent) -> bool:
        """Apply a mouse report; return ``True`` if the view changed."""
        if not event.pressed:
            return False
        if event.button == WHEEL_UP:
            self.scroll_up()
            return True
        if event.button == WHEEL_DOWN:
            self.scroll_down()
            return True
        button = event.button
        if MOTION_FLAG <= button < WHEEL_UP:
            # Drag reports are treated as fresh clicks.
            button -= MOTION_FLAG
        if button != PRIMARY_BUTTON:
            return False
        offset = self.position_to_offset(event.column, event.row)
        if offset is None:
            logger.debug("Ignoring click at column %d row %d", event.column, event.row)
            return False
        self.cursor = offset
        self.nibble = 0
        return True
