"""The editing session: modes, commands and the edit protocol.

Every edit goes log first, then file, then settle.  Undo and redo consult the
log, replay the byte through the file and settle.  Errors from the pieces are
caught in :meth:`EditingSession.handle_key` and shown as status text; only
opening the file or the log can fail outside it.
"""

from __future__ import annotations

import collections.abc as cabc
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias

from .edit_log import EditLogError, LogInconsistentError
from .interpreter import AnnotationLine, InterpreterError, ReadableSource
from .structs import Struct
from .viewport import ROW_BYTES, PointerEvent, Viewport

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from numpy import ndarray as NDArray
else:
    NDArray: TypeAlias = Any

logger = logging.getLogger(__name__)

U64_MAX = (1 << 64) - 1
HEX_DIGITS = "0123456789abcdefABCDEF"


class CommandError(ValueError):
    """A command or key could not be carried out; the text is shown inline."""


class Mode(enum.Enum):
    READ = "READ-ONLY"
    MODIFY = "MODIFY"
    REPLACE = "REPLACE"


@dataclass(frozen=True)
class StatusMessage:
    text: str
    style: str = "error"


class EditableSource(ReadableSource, Protocol):
    def length(self) -> int: ...

    def read_u8(self, offset: int) -> int: ...

    def read_rows(self, start: int, end: int) -> NDArray: ...

    def write_single_byte(self, offset: int, value: int) -> None: ...


class Log(Protocol):
    def enter(self, address: int, old: int, new: int) -> None: ...

    def settle(self) -> None: ...

    def undo(self) -> tuple[int, int] | None: ...

    def redo(self) -> tuple[int, int] | None: ...


def parse_address(text: str) -> int:
    """Parse a goto target: ``start``/``begin``/``end``, ``0x``, ``0b``, octal or decimal."""
    if text == "end":
        return U64_MAX
    if text in ("start", "begin"):
        return 0
    if text.startswith("0x"):
        digits, base = text[2:], 16
    elif text.startswith("0b"):
        digits, base = text[2:], 2
    elif text.startswith("0"):
        digits, base = text, 8
    else:
        digits, base = text, 10
    # int() would also accept signs, underscores and whitespace
    if not digits or not all(c.isascii() and c.isalnum() for c in digits):
        raise CommandError(f"{text}: invalid digit found in string")
    try:
        value = int(digits, base)
    except ValueError as exc:
        raise CommandError(f"{text}: invalid digit found in string") from exc
    if value > U64_MAX:
        raise CommandError(f"{text}: number too large to fit in target type")
    return value


class EditingSession:
    """Owns the viewport, the mode and the command line for one open file."""

    def __init__(
        self,
        source: EditableSource,
        log: Log,
        structs: cabc.Mapping[str, Struct] | None = None,
        height: int = 25,
    ) -> None:
        self.source = source
        self.log = log
        self.structs = dict(structs or {})
        self.viewport = Viewport(source.length(), height)
        self.mode = Mode.READ
        self.command_line: str | None = None
        self.status: StatusMessage | None = None
        self.jump_stack: list[int] = []
        self.active_struct: str | None = None
        self.annotations: list[AnnotationLine] = []
        self.quit_requested = False
        self._pending: tuple[int, int, int] | None = None  # address, old, partial

    # -------- state --------

    @property
    def cursor(self) -> int:
        return self.viewport.cursor

    @property
    def file_length(self) -> int:
        return self.viewport.file_length

    def pending_byte(self) -> tuple[int, int] | None:
        """Return ``(address, value)`` of a half-typed replacement byte."""
        if self._pending is None or self.viewport.nibble != 1:
            return None
        address, _, value = self._pending
        if address != self.viewport.cursor:
            return None
        return address, value

    def visible_bytes(self) -> NDArray:
        """Return the on-screen bytes as ``(rows, 16)``, with any pending digit applied."""
        vp = self.viewport
        block = self.source.read_rows(vp.base_offset, vp.end_offset)
        pending = self.pending_byte()
        if pending is not None:
            address, value = pending
            rel = address - vp.base_offset
            block[rel // ROW_BYTES, rel % ROW_BYTES] = value
        return block

    def resize(self, height: int) -> None:
        self.viewport.resize(height, self.source.length())
        self.refresh_struct()

    # -------- status --------

    def _report(self, text: str, style: str = "error") -> None:
        self.status = StatusMessage(text, style)

    def refresh_struct(self) -> None:
        """Recompute the active struct's rows; failures become status text."""
        if self.active_struct is None:
            self.annotations = []
            return
        struct = self.structs[self.active_struct]
        try:
            self.annotations = struct.annotate(
                self.source, self.viewport.cursor, self.viewport.height,
            )
        except (InterpreterError, OSError, ValueError) as exc:
            logger.debug("Struct %s failed at %#x: %s", struct.name, self.cursor, exc)
            self.annotations = []
            if self.status is None:
                self._report(f"struct: {exc}")

    # -------- navigation --------

    def goto(self, target: int, recenter: bool = True) -> None:
        self.jump_stack.append(self.viewport.cursor)
        self.viewport.goto(target, recenter)

    def push_jump(self) -> None:
        self.jump_stack.append(self.viewport.cursor)

    def jump_back(self) -> None:
        if not self.jump_stack:
            raise CommandError("Jump stack empty")
        self.viewport.goto(self.jump_stack.pop(), recenter=True)

    # -------- modes and editing --------

    def set_mode(self, mode: Mode) -> None:
        self.mode = mode
        self._pending = None
        self.viewport.nibble = 0

    def _perform_replacement(self, address: int, old: int, new: int) -> None:
        try:
            self.log.enter(address, old, new)
        except EditLogError as exc:
            raise CommandError(f"Undo log error: {exc}") from exc
        try:
            self.source.write_single_byte(address, new)
        except OSError as exc:
            logger.debug("Write of %#x at %#x failed: %s", new, address, exc)
            raise CommandError(f"Write error: {exc}") from exc
        self.log.settle()

    def replace_digit(self, digit: str) -> None:
        """Type one hex digit over the byte under the cursor."""
        vp = self.viewport
        if vp.file_length == 0:
            return
        value = int(digit, 16)
        if self.pending_byte() is None:
            old = self.source.read_u8(vp.cursor)
            self._pending = (vp.cursor, old, (old & 0x0F) | (value << 4))
            vp.nibble = 1
            return

        address, old, partial = self._pending
        new = (partial & 0xF0) | value
        self._pending = None
        try:
            self._perform_replacement(address, old, new)
        finally:
            vp.right()

    def _replay(self, address: int, value: int) -> None:
        try:
            self.source.write_single_byte(address, value)
        except OSError as exc:
            raise CommandError(f"Write error: {exc}") from exc
        self.log.settle()
        self.goto(address)

    def undo(self) -> None:
        if self.mode is Mode.READ:
            raise CommandError("Cannot undo in read-only mode")
        entry = self.log.undo()
        if entry is None:
            raise CommandError("Nothing to undo")
        self._replay(*entry)

    def redo(self) -> None:
        if self.mode is Mode.READ:
            raise CommandError("Cannot redo in read-only mode")
        entry = self.log.redo()
        if entry is None:
            raise CommandError("Nothing to redo")
        self._replay(*entry)

    def activate_struct(self, name: str) -> None:
        if name not in self.structs:
            raise CommandError(f"Unknown struct “{name}”")
        self.active_struct = name
        logger.info("Activated struct %s", name)

    # -------- command line --------

    def execute(self, line: str) -> None:
        """Run one command line (without the leading ``:``)."""
        args = line.split()
        if not args:
            return
        cmd = args[0]
        if cmd in ("g", "goto"):
            if len(args) != 2:
                raise CommandError(f"Usage: {cmd} <address|start|end>")
            self.goto(parse_address(args[1]))
        elif cmd in ("q", "quit"):
            self.quit_requested = True
        elif cmd == "struct":
            if len(args) != 2:
                raise CommandError(f"Usage: {cmd} <struct name>")
            self.activate_struct(args[1])
        elif cmd == "undo":
            self.undo()
        elif cmd == "redo":
            self.redo()
        else:
            raise CommandError(f"Unknown command “{cmd}”")

    def _command_key(self, key: str) -> None:
        line = self.command_line or ""
        if key == "enter":
            self.command_line = None
            self.execute(line)
        elif key == "escape":
            self.command_line = None
        elif key == "backspace":
            self.command_line = line[:-1] if line else None
        elif len(key) == 1:
            self.command_line = line + key
        elif key.startswith("ctrl+") and len(key) == 6:
            self.command_line = line + "^" + key[-1].upper()

    # -------- input --------

    def _dispatch(self, key: str) -> None:
        vp = self.viewport
        if self.command_line is not None:
            self._command_key(key)
        elif self.mode is Mode.REPLACE and len(key) == 1 and key in HEX_DIGITS:
            self.replace_digit(key)
        elif key == "up":
            vp.up()
        elif key == "down":
            vp.down()
        elif key == "left":
            vp.left()
        elif key == "right":
            vp.right()
        elif key == "home":
            vp.row_start()
        elif key == "end":
            vp.row_end()
        elif key == "pageup":
            vp.page_up()
        elif key == "pagedown":
            vp.page_down()
        elif key == "ctrl+home":
            self.goto(0)
        elif key == "ctrl+end":
            self.goto(U64_MAX)
        elif key == ":":
            self.command_line = ""
        elif key == "M":
            self.set_mode(Mode.MODIFY)
        elif key == "R":
            self.set_mode(Mode.REPLACE)
        elif key == "escape":
            self.set_mode(Mode.READ)
        elif key == "q":
            self.quit_requested = True
        elif key == "t":
            self.push_jump()
        elif key == "ctrl+t":
            self.jump_back()
        elif key == "u":
            self.undo()
        elif key == "ctrl+r":
            self.redo()

    def handle_key(self, key: str) -> None:
        """Apply one key press named the way matplotlib names keys."""
        self.status = None
        try:
            self._dispatch(key)
        except LogInconsistentError as exc:
            logger.warning("Edit log settle failed: %s", exc)
            self._report(f"Warning: {exc}", "warning")
        except (CommandError, EditLogError, OSError) as exc:
            self._report(f"Error: {exc}")
        self.refresh_struct()

    def handle_pointer(self, event: PointerEvent) -> None:
        self.status = None
        if self.command_line is None and self.viewport.pointer(event):
            self.refresh_struct()
