"""Compose the editor screen as styled text rows.

Each :class:`ScreenLine` is plain text plus style spans; a front end only has
to paint them.  The last two rows are a separator and the status or command
line, and the active struct's rows sit to the right of the byte view.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeAlias

from .session import EditingSession, Mode
from .viewport import (
    ADDRESS_WIDTH,
    CHAR_COLUMN,
    HEX_COLUMN,
    LINE_WIDTH,
    ROW_BYTES,
    byte_to_column,
)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from numpy import ndarray as NDArray
else:
    NDArray: TypeAlias = Any

STRUCT_COLUMN = 92
MODE_WIDTH = 16

MODE_STYLES = {
    Mode.READ: "mode-read",
    Mode.MODIFY: "mode-modify",
    Mode.REPLACE: "mode-replace",
}


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    style: str


@dataclass
class ScreenLine:
    text: str = ""
    spans: list[Span] = field(default_factory=list)

    def put(self, column: int, text: str, style: str | None = None) -> None:
        """Write ``text`` at ``column``, padding with spaces if needed."""
        if len(self.text) < column:
            self.text += " " * (column - len(self.text))
        self.text = self.text[:column] + text + self.text[column + len(text):]
        if style is not None and text:
            self.spans.append(Span(column, column + len(text), style))


def char_glyph(value: int) -> str:
    if value == 0x00:
        return " "
    if value == 0x0A:
        return "¶"
    if value == 0x20:
        return "␣"
    if value < 0x20 or value > 0x7E:
        return "·"
    return chr(value)


def compose_row(base: int, row: NDArray, count: int) -> ScreenLine:
    """Lay out one 16-byte row, of which the first ``count`` bytes exist."""
    line = ScreenLine()
    line.put(0, f"{base:{ADDRESS_WIDTH}x}", "address")
    line.put(ADDRESS_WIDTH, " │ ")
    for i in range(count):
        line.put(HEX_COLUMN + byte_to_column(i), f"{int(row[i]):02x}")
    line.put(CHAR_COLUMN - 2, "│ ")
    line.put(CHAR_COLUMN, "".join(char_glyph(int(v)) for v in row[:count]))
    line.put(LINE_WIDTH, "")
    return line


def compose_status(session: EditingSession) -> ScreenLine:
    line = ScreenLine()
    if session.status is not None:
        line.put(0, f"{session.status.text:<{LINE_WIDTH}}", session.status.style)
    elif session.command_line is not None:
        line.put(0, f":{session.command_line:<{LINE_WIDTH - 1}}")
    else:
        mode = session.mode.value
        line.put(MODE_WIDTH - len(mode), mode, MODE_STYLES[session.mode])
        loc = f"{session.cursor:#x}"
        line.put(LINE_WIDTH - len(loc), loc, "loc")
    return line


def _mark_cursor(lines: list[ScreenLine], session: EditingSession) -> None:
    vp = session.viewport
    if not vp.cursor_visible():
        return
    row = (vp.cursor - vp.base_offset) // ROW_BYTES
    byte = vp.cursor % ROW_BYTES
    line = lines[row]
    line.spans.insert(0, Span(0, LINE_WIDTH, "active-line"))
    hex_col = HEX_COLUMN + byte_to_column(byte)
    if session.pending_byte() is not None:
        line.spans.append(Span(hex_col + 1, hex_col + 2, "cursor"))
    else:
        line.spans.append(Span(hex_col, hex_col + 2, "cursor"))
    if session.command_line is None:
        line.spans.append(Span(CHAR_COLUMN + byte, CHAR_COLUMN + byte + 1, "active-char"))


def compose_screen(session: EditingSession) -> list[ScreenLine]:
    """Return ``viewport.height`` rows describing the whole screen."""
    vp = session.viewport
    lines = [ScreenLine() for _ in range(vp.height)]
    if vp.visible_rows > 0:
        block = session.visible_bytes()
        for index, base in enumerate(vp.visible_row_offsets()):
            count = min(ROW_BYTES, vp.end_offset - base)
            lines[index] = compose_row(base, block[index], count)
        _mark_cursor(lines, session)

    for index, annotation in enumerate(session.annotations[: vp.height]):
        lines[index].put(STRUCT_COLUMN, annotation.text, annotation.style)

    if vp.height >= 2:
        lines[-2].put(0, "─" * LINE_WIDTH, "separator")
    if vp.height >= 1:
        status = compose_status(session)
        lines[-1].text = status.text + lines[-1].text[len(status.text):]
        lines[-1].spans = status.spans + lines[-1].spans
    return lines


def screen_text(lines: list[ScreenLine]) -> str:
    return "\n".join(line.text.rstrip() for line in lines)
