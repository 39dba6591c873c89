"""Stack machine that runs struct programs against file bytes.

A program is restarted from scratch on every refresh.  It reads the file
through a :class:`ReadableSource`, never writes to it, and produces a flat,
depth-first list of :class:`AnnotationLine` objects for the struct panel.
"""

from __future__ import annotations

import codecs
import collections.abc as cabc
import enum
import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from .bytecode import (
    BIG_ENDIAN,
    LITTLE_ENDIAN,
    LOAD_INT_FORMS,
    LOAD_STR_FORMS,
    OUT_SIGNED,
    OUT_UNSIGNED,
    U64_MASK,
    Op,
)

logger = logging.getLogger(__name__)

SIGN_BIT = 1 << 63
MAX_BASE = 36
DEFAULT_MAX_STEPS = 1_000_000
_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_PREFIXES = {2: "0b", 8: "0o", 10: "", 16: "0x"}


class ReadableSource(Protocol):
    """Subset of :class:`~hexstruct_editor.byte_source.ByteSource` used here."""

    def read(self, offset: int, length: int) -> bytes:
        """Return exactly ``length`` bytes at ``offset`` or raise."""


class InterpreterError(RuntimeError):
    """Aborts the current struct refresh."""


class StackUnderflowError(InterpreterError):
    pass


class UnknownOpcodeError(InterpreterError):
    pass


class StringEncodingError(InterpreterError):
    pass


class ScratchMemoryError(InterpreterError):
    pass


class StructPanic(InterpreterError):
    """Raised by the ``panic`` instruction with the dumped operand stack."""


# -------- integer helpers --------


def format_int(value: int, signed: bool = False, base: int = 10) -> str:
    """Format ``value`` as a 64-bit integer in ``base``.

    Non-decimal bases get a ``0b``/``0o``/``0x`` prefix, or ``0[N]`` for any
    other base.  Zero is always ``"0"``.  With ``signed`` the value is read
    as two's complement and negative numbers get a leading ``-``.
    """
    if not 2 <= base <= MAX_BASE:
        raise ValueError(f"Base must be within 2..{MAX_BASE}, but is {base}")
    val = value & U64_MASK
    if val == 0:
        return "0"
    sign = ""
    if signed and val & SIGN_BIT:
        val = (1 << 64) - val
        sign = "-"
    digits: list[str] = []
    while val:
        val, digit = divmod(val, base)
        digits.append(_DIGITS[digit])
    prefix = _PREFIXES.get(base, f"0[{base}]")
    return sign + prefix + "".join(reversed(digits))


def decode_integer(data: bytes, big_endian: bool, signed: bool) -> int:
    """Return ``data`` as a u64, sign-extended from its width when ``signed``."""
    val = int.from_bytes(data, "big" if big_endian else "little")
    bits = len(data) * 8
    if signed and bits and val >> (bits - 1) & 1:
        val |= U64_MASK ^ ((1 << bits) - 1)
    return val & U64_MASK


def decode_chars(
    next_byte: cabc.Callable[[], int],
    count: int | None,
    ascii_only: bool,
    what: str = "string",
) -> str:
    """Decode ``count`` characters (or up to a NUL when ``None``)."""
    decoder = codecs.getincrementaldecoder("utf-8")("strict")
    chars: list[str] = []
    kind = "ASCII" if ascii_only else "utf-8"
    while count is None or len(chars) < count:
        byte = next_byte()
        if ascii_only and byte & 0x80:
            raise StringEncodingError(f"Invalid {kind} {what}")
        try:
            text = decoder.decode(bytes((byte,)))
        except UnicodeDecodeError as exc:
            raise StringEncodingError(f"Invalid {kind} {what}") from exc
        if not text:
            continue
        if count is None and text == "\0":
            break
        chars.append(text)
    return "".join(chars)


def read_string(
    source: ReadableSource, offset: int, count: int | None, utf8: bool,
) -> str:
    """Read a validated string from ``source`` starting at ``offset``."""
    pos = offset

    def next_byte() -> int:
        nonlocal pos
        byte = source.read(pos, 1)[0]
        pos += 1
        return byte

    return decode_chars(next_byte, count, ascii_only=not utf8)


# -------- output --------


class LineKind(enum.Enum):
    VALUE = "value"
    SEPARATOR = "separator"
    HEADER = "header"
    HEADER_PAD = "header-pad"


@dataclass(frozen=True)
class AnnotationLine:
    """One row of the struct panel."""

    kind: LineKind
    text: str = ""
    level: int = 0

    @property
    def style(self) -> str:
        """Return the display style name; header levels 3+ share one style."""
        if self.kind is LineKind.HEADER:
            return f"h{self.level}" if self.level < 3 else "h3+"
        return self.kind.value


class AnnotationWriter:
    """Collects annotation rows under a fixed row budget."""

    def __init__(self, max_rows: int) -> None:
        self.max_rows = max(0, max_rows)
        self.lines: list[AnnotationLine] = []
        self._last_was_header = True

    @property
    def remaining(self) -> int:
        return self.max_rows - len(self.lines)

    def value(self, name: str, text: str) -> bool:
        """Append ``name: text``; return ``False`` if the budget is exhausted."""
        if self.remaining < 1:
            return False
        self.lines.append(AnnotationLine(LineKind.VALUE, f"{name}: {text}"))
        self._last_was_header = False
        return True

    def header(self, title: str, level: int) -> bool:
        """Append a two-row header block, preceded by a separator after values."""
        if not self._last_was_header:
            if self.remaining < 1:
                return False
            self.lines.append(AnnotationLine(LineKind.SEPARATOR))
        if self.remaining < 2:
            return False
        self.lines.append(AnnotationLine(LineKind.HEADER, title, level))
        self.lines.append(AnnotationLine(LineKind.HEADER_PAD, "", level))
        self._last_was_header = True
        return True


# -------- scratch memory --------


class ScratchMemory:
    """Growable arena of u64 cells; reading a never-written cell is an error."""

    def __init__(self, capacity: int = 16) -> None:
        self._cells = np.zeros(capacity, dtype=np.uint64)
        self._written = np.zeros(capacity, dtype=bool)

    def __len__(self) -> int:
        return int(self._written.sum())

    def store(self, index: int, value: int) -> None:
        if index >= len(self._cells):
            size = max(index + 1, len(self._cells) * 2)
            if size > 1 << 24:
                raise ScratchMemoryError(f"Scratch index {index:#x} out of range")
            grow = size - len(self._cells)
            self._cells = np.concatenate([self._cells, np.zeros(grow, dtype=np.uint64)])
            self._written = np.concatenate([self._written, np.zeros(grow, dtype=bool)])
        self._cells[index] = value
        self._written[index] = True

    def load(self, index: int) -> int:
        if index >= len(self._cells) or not self._written[index]:
            raise ScratchMemoryError(f"Read of unset scratch cell {index:#x}")
        return int(self._cells[index])


# -------- machine --------


class StructMachine:
    """One execution of a struct program."""

    def __init__(
        self,
        code: bytes,
        source: ReadableSource,
        cursor: int,
        max_rows: int,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> None:
        self.code = bytes(code)
        self.source = source
        self.cursor = cursor
        self.max_steps = max_steps
        self.pc = 0
        self.big_endian = False
        self.stack: list[int] = []
        self.strings: list[str] = []
        self.scratch = ScratchMemory()
        self.out = AnnotationWriter(max_rows)
        self.halted = False

    # -------- operand decoding --------

    def _fetch_u8(self) -> int:
        if self.pc >= len(self.code):
            raise InterpreterError(f"Truncated instruction at {self.pc:#x}")
        byte = self.code[self.pc]
        self.pc += 1
        return byte

    def _fetch_u64(self) -> int:
        end = self.pc + 8
        if end > len(self.code):
            raise InterpreterError(f"Truncated instruction at {self.pc:#x}")
        val = int.from_bytes(self.code[self.pc:end], "little")
        self.pc = end
        return val

    def _pop(self) -> int:
        if not self.stack:
            raise StackUnderflowError("Stack ran out")
        return self.stack.pop()

    def _pop_str(self) -> str:
        if not self.strings:
            raise StackUnderflowError("String stack ran out")
        return self.strings.pop()

    def _push(self, value: int) -> None:
        self.stack.append(value & U64_MASK)

    # -------- instructions --------

    def _op_stop(self, start: int) -> None:
        self.halted = True

    def _op_endian(self, start: int) -> None:
        mode = self._fetch_u8()
        if mode == LITTLE_ENDIAN:
            self.big_endian = False
        elif mode == BIG_ENDIAN:
            self.big_endian = True
        else:
            raise UnknownOpcodeError(f"Unknown opcode {Op.ENDIAN.value:x} {mode:x}")

    def _op_push_int(self, start: int) -> None:
        self._push(self._fetch_u64())

    def _op_push_str(self, start: int) -> None:
        count = self._fetch_u64()
        self.strings.append(
            decode_chars(self._fetch_u8, count, ascii_only=False, what="string constant")
        )

    def _op_push_cursor(self, start: int) -> None:
        self._push(self.cursor)

    def _op_load_int(self, start: int) -> None:
        subop = self._fetch_u8()
        if subop not in LOAD_INT_FORMS:
            raise UnknownOpcodeError(f"Unknown opcode {Op.LOAD_INT.value:x} {subop:x}")
        width, signed = LOAD_INT_FORMS[subop]
        offset = self._pop()
        data = self.source.read(offset, width)
        self._push(decode_integer(data, self.big_endian, signed))

    def _op_load_str(self, start: int) -> None:
        subop = self._fetch_u8()
        if subop not in LOAD_STR_FORMS:
            raise UnknownOpcodeError(f"Unknown opcode {Op.LOAD_STR.value:x} {subop:x}")
        utf8, sized = LOAD_STR_FORMS[subop]
        count = self._pop() if sized else None
        offset = self._pop()
        self.strings.append(read_string(self.source, offset, count, utf8))

    def _op_scratch_load(self, start: int) -> None:
        self._push(self.scratch.load(self._pop()))

    def _op_scratch_store(self, start: int) -> None:
        index = self._pop()
        value = self._pop()
        self.scratch.store(index, value)

    def _op_out_int(self, start: int) -> None:
        subop = self._fetch_u8()
        base = self._fetch_u8()
        name = self._pop_str()
        value = self._pop()
        self._pop()  # origin offset
        if subop not in (OUT_UNSIGNED, OUT_SIGNED):
            raise UnknownOpcodeError(f"Unknown opcode {Op.OUT_INT.value:x} {subop:x}")
        if not 2 <= base <= MAX_BASE:
            raise InterpreterError(f"Base must be within 2..{MAX_BASE}, but is {base}")
        text = format_int(value, signed=subop == OUT_SIGNED, base=base)
        if not self.out.value(name, text):
            self.halted = True

    def _op_out_str(self, start: int) -> None:
        subop = self._fetch_u8()
        name = self._pop_str()
        value = self._pop_str()
        self._pop()  # origin offset
        if subop != 0x00:
            raise UnknownOpcodeError(f"Unknown opcode {Op.OUT_STR.value:x} {subop:x}")
        if not self.out.value(name, value):
            self.halted = True

    def _op_out_header(self, start: int) -> None:
        level = self._fetch_u8()
        title = self._pop_str()
        if not self.out.header(title, level):
            self.halted = True
            return
        # Folders are always expanded; programs may branch on this flag.
        self._push(1)

    def _op_swap(self, start: int) -> None:
        x = self._pop()
        y = self._pop()
        self._push(x)
        self._push(y)

    def _op_dup(self, start: int) -> None:
        x = self._pop()
        self._push(x)
        self._push(x)

    def _op_drop(self, start: int) -> None:
        self._pop()

    def _op_neg(self, start: int) -> None:
        self._push(-self._pop())

    def _op_add(self, start: int) -> None:
        self._push(self._pop() + self._pop())

    def _op_and(self, start: int) -> None:
        self._push(self._pop() & self._pop())

    def _jump(self, start: int, taken: cabc.Callable[[int], bool] | None) -> None:
        offset = self._fetch_u64()
        if taken is None or taken(self._pop()):
            self.pc = (start + offset) & U64_MASK

    def _op_jmp(self, start: int) -> None:
        self._jump(start, None)

    def _op_jz(self, start: int) -> None:
        self._jump(start, lambda v: v == 0)

    def _op_jnz(self, start: int) -> None:
        self._jump(start, lambda v: v != 0)

    def _op_jnn(self, start: int) -> None:
        self._jump(start, lambda v: not v & SIGN_BIT)

    def _op_panic(self, start: int) -> None:
        dump = "".join(f" {v:#x}" for v in reversed(self.stack))
        self.stack.clear()
        raise StructPanic(f"Stack:{dump}")

    _HANDLERS: dict[int, cabc.Callable[[StructMachine, int], None]] = {
        Op.STOP: _op_stop,
        Op.ENDIAN: _op_endian,
        Op.PUSH_INT: _op_push_int,
        Op.PUSH_STR: _op_push_str,
        Op.PUSH_CURSOR: _op_push_cursor,
        Op.LOAD_INT: _op_load_int,
        Op.LOAD_STR: _op_load_str,
        Op.SCRATCH_LOAD: _op_scratch_load,
        Op.OUT_INT: _op_out_int,
        Op.OUT_STR: _op_out_str,
        Op.OUT_HEADER: _op_out_header,
        Op.SCRATCH_STORE: _op_scratch_store,
        Op.SWAP: _op_swap,
        Op.DUP: _op_dup,
        Op.DROP: _op_drop,
        Op.NEG: _op_neg,
        Op.ADD: _op_add,
        Op.AND: _op_and,
        Op.JMP: _op_jmp,
        Op.JZ: _op_jz,
        Op.JNZ: _op_jnz,
        Op.JNN: _op_jnn,
        Op.PANIC: _op_panic,
    }

    def step(self) -> None:
        """Execute the instruction at the program counter."""
        start = self.pc
        opcode = self._fetch_u8()
        handler = self._HANDLERS.get(opcode)
        if handler is None:
            raise UnknownOpcodeError(f"Unknown opcode {opcode:x}")
        handler(self, start)

    def run(self) -> list[AnnotationLine]:
        """Run until stop, end of program or an exhausted row budget."""
        steps = 0
        while not self.halted and self.pc < len(self.code):
            if steps >= self.max_steps:
                raise InterpreterError(f"Step limit of {self.max_steps} exceeded")
            self.step()
            steps += 1
        return self.out.lines


def run_program(
    code: bytes, source: ReadableSource, cursor: int, max_rows: int,
) -> list[AnnotationLine]:
    """Execute ``code`` once and return the produced annotation lines."""
    return StructMachine(code, source, cursor, max_rows).run()
