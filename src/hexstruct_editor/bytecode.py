"""Opcode table and a small assembler for struct programs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

U64_MASK = (1 << 64) - 1


class Op(enum.IntEnum):
    STOP = 0x00
    ENDIAN = 0x01
    PUSH_INT = 0x10
    PUSH_STR = 0x12
    PUSH_CURSOR = 0x14
    LOAD_INT = 0x18
    LOAD_STR = 0x1A
    SCRATCH_LOAD = 0x1C
    OUT_INT = 0x28
    OUT_STR = 0x2A
    OUT_HEADER = 0x2B
    SCRATCH_STORE = 0x2C
    SWAP = 0x80
    DUP = 0x81
    DROP = 0x82
    NEG = 0x83
    ADD = 0x84
    AND = 0x85
    JMP = 0xE0
    JZ = 0xE1
    JNZ = 0xE2
    JNN = 0xE3
    PANIC = 0xFF


LITTLE_ENDIAN = 0x00
BIG_ENDIAN = 0x01

# LOAD_INT sub-opcode -> (width, signed).  0x01 is a 64-bit signed load, which
# needs no sign extension and therefore decodes like 0x00.
LOAD_INT_FORMS: dict[int, tuple[int, bool]] = {
    0x00: (8, False),
    0x01: (8, False),
    0x02: (4, False),
    0x03: (4, True),
    0x04: (2, False),
    0x05: (2, True),
    0x06: (1, False),
    0x07: (1, True),
}

# LOAD_STR sub-opcode -> (utf8, sized)
LOAD_STR_FORMS: dict[int, tuple[bool, bool]] = {
    0x00: (True, False),
    0x01: (True, True),
    0x02: (False, False),
    0x03: (False, True),
}

OUT_UNSIGNED = 0x00
OUT_SIGNED = 0x01
JUMP_SIZE = 9


def load_int_subop(width: int, signed: bool) -> int:
    """Return the LOAD_INT sub-opcode for ``width`` bytes."""
    if width == 8:
        return 0x01 if signed else 0x00
    for subop, form in LOAD_INT_FORMS.items():
        if form == (width, signed):
            return subop
    raise ValueError(f"No integer load for width {width}")


def load_str_subop(utf8: bool, sized: bool) -> int:
    for subop, form in LOAD_STR_FORMS.items():
        if form == (utf8, sized):
            return subop
    raise AssertionError("unreachable")


def u64(value: int) -> bytes:
    """Encode ``value`` (possibly negative) as a little-endian u64 operand."""
    return (value & U64_MASK).to_bytes(8, "little")


@dataclass
class ProgramBuilder:
    """Assemble bytecode, resolving jump labels against each jump's start."""

    code: bytearray = field(default_factory=bytearray)
    labels: dict[str, int] = field(default_factory=dict)
    fixups: list[tuple[int, str]] = field(default_factory=list)

    def _emit(self, *parts: int | bytes) -> ProgramBuilder:
        for part in parts:
            if isinstance(part, int):
                self.code.append(part)
            else:
                self.code.extend(part)
        return self

    def stop(self) -> ProgramBuilder:
        return self._emit(Op.STOP)

    def endian(self, big: bool) -> ProgramBuilder:
        return self._emit(Op.ENDIAN, BIG_ENDIAN if big else LITTLE_ENDIAN)

    def push_int(self, value: int) -> ProgramBuilder:
        return self._emit(Op.PUSH_INT, u64(value))

    def push_str(self, text: str) -> ProgramBuilder:
        return self._emit(Op.PUSH_STR, u64(len(text)), text.encode("utf-8"))

    def push_cursor(self) -> ProgramBuilder:
        return self._emit(Op.PUSH_CURSOR)

    def load_int(self, width: int, signed: bool = False) -> ProgramBuilder:
        return self._emit(Op.LOAD_INT, load_int_subop(width, signed))

    def load_str(self, utf8: bool = True, sized: bool = False) -> ProgramBuilder:
        return self._emit(Op.LOAD_STR, load_str_subop(utf8, sized))

    def scratch_load(self) -> ProgramBuilder:
        return self._emit(Op.SCRATCH_LOAD)

    def scratch_store(self) -> ProgramBuilder:
        return self._emit(Op.SCRATCH_STORE)

    def out_int(self, base: int = 10, signed: bool = False) -> ProgramBuilder:
        return self._emit(Op.OUT_INT, OUT_SIGNED if signed else OUT_UNSIGNED, base)

    def out_str(self) -> ProgramBuilder:
        return self._emit(Op.OUT_STR, 0x00)

    def header(self, level: int) -> ProgramBuilder:
        return self._emit(Op.OUT_HEADER, level)

    def swap(self) -> ProgramBuilder:
        return self._emit(Op.SWAP)

    def dup(self) -> ProgramBuilder:
        return self._emit(Op.DUP)

    def drop(self) -> ProgramBuilder:
        return self._emit(Op.DROP)

    def neg(self) -> ProgramBuilder:
        return self._emit(Op.NEG)

    def add(self) -> ProgramBuilder:
        return self._emit(Op.ADD)

    def and_(self) -> ProgramBuilder:
        return self._emit(Op.AND)

    def panic(self) -> ProgramBuilder:
        return self._emit(Op.PANIC)

    def label(self, name: str) -> ProgramBuilder:
        if name in self.labels:
            raise ValueError(f"Duplicate label {name!r}")
        self.labels[name] = len(self.code)
        return self

    def _jump(self, op: Op, target: str | int) -> ProgramBuilder:
        if isinstance(target, int):
            return self._emit(op, u64(target))
        self.fixups.append((len(self.code), target))
        return self._emit(op, bytes(8))

    def jmp(self, target: str | int) -> ProgramBuilder:
        return self._jump(Op.JMP, target)

    def jz(self, target: str | int) -> ProgramBuilder:
        return self._jump(Op.JZ, target)

    def jnz(self, target: str | int) -> ProgramBuilder:
        return self._jump(Op.JNZ, target)

    def jnn(self, target: str | int) -> ProgramBuilder:
        return self._jump(Op.JNN, target)

    def build(self) -> bytes:
        """Return the finished program with all label references patched."""
        code = bytearray(self.code)
        for start, name in self.fixups:
            if name not in self.labels:
                raise ValueError(f"Undefined label {name!r}")
            code[start + 1 : start + JUMP_SIZE] = u64(self.labels[name] - start)
        return bytes(code)
