"""Struct definitions: the declarative Folder/Value tree and struct loading.

A struct is either a raw bytecode program (see :mod:`.interpreter`) or a
JSON tree like::

    {"name": "header", "children": [
        {"name": "magic", "offset": {"absolute": 0},
         "kind": {"integer": {"width": 4, "endian": "big", "base": 16}}},
        {"name": "here", "offset": {"cursor": -2},
         "kind": {"integer": {"width": 2, "sign": "twos-complement"}}}
    ]}

Trees are decoded directly by :func:`decode_tree` and can be lowered to
bytecode with :func:`compile_definition`; both produce the same rows.
"""

from __future__ import annotations

import collections.abc as cabc
import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from .bytecode import U64_MASK, ProgramBuilder
from .interpreter import (
    MAX_BASE,
    AnnotationLine,
    AnnotationWriter,
    ReadableSource,
    decode_integer,
    format_int,
    read_string,
    run_program,
)

logger = logging.getLogger(__name__)

LOADABLE_WIDTHS = (1, 2, 4, 8)


class StructDefinitionError(ValueError):
    """Raised for malformed or unsupported struct definitions."""


class Endianness(enum.Enum):
    LITTLE = "little"
    BIG = "big"


class SignEncoding(enum.Enum):
    UNSIGNED = "unsigned"
    TWOS_COMPLEMENT = "twos-complement"
    ONES_COMPLEMENT = "ones-complement"
    SIGN_MAGNITUDE = "sign-magnitude"


@dataclass(frozen=True)
class Absolute:
    address: int


@dataclass(frozen=True)
class RelativeToCursor:
    delta: int


Offset: TypeAlias = "Absolute | RelativeToCursor"


@dataclass(frozen=True)
class IntegerKind:
    width: int
    endianness: Endianness = Endianness.LITTLE
    sign: SignEncoding = SignEncoding.UNSIGNED
    base: int = 10

    def __post_init__(self) -> None:
        if not 1 <= self.width <= 8:
            raise StructDefinitionError(f"Integer width must be 1..8, not {self.width}")
        if not 2 <= self.base <= MAX_BASE:
            raise StructDefinitionError(f"Base must be 2..{MAX_BASE}, not {self.base}")

    @property
    def signed(self) -> bool:
        return self.sign is not SignEncoding.UNSIGNED


@dataclass(frozen=True)
class StringKind:
    utf8: bool = True
    length: int | None = None


Kind: TypeAlias = "IntegerKind | StringKind"


@dataclass(frozen=True)
class Value:
    name: str
    offset: Offset
    kind: Kind


@dataclass(frozen=True)
class Folder:
    name: str
    children: tuple[Node, ...] = ()


Node: TypeAlias = "Folder | Value"


def resolve_offset(offset: Offset, cursor: int) -> int:
    """Return the absolute file address ``offset`` refers to."""
    if isinstance(offset, Absolute):
        return offset.address & U64_MASK
    if isinstance(offset, RelativeToCursor):
        return (cursor + offset.delta) & U64_MASK
    raise TypeError(f"Unknown offset {offset!r}")


def decode_int_kind(data: bytes, kind: IntegerKind) -> int:
    """Decode ``data`` per ``kind`` into a u64 (two's complement when negative)."""
    big = kind.endianness is Endianness.BIG
    if kind.sign is SignEncoding.TWOS_COMPLEMENT:
        return decode_integer(data, big, signed=True)
    val = decode_integer(data, big, signed=False)
    sign_bit = 1 << (kind.width * 8 - 1)
    if kind.sign is SignEncoding.UNSIGNED or not val & sign_bit:
        return val
    if kind.sign is SignEncoding.ONES_COMPLEMENT:
        return (val - ((sign_bit << 1) - 1)) & U64_MASK
    return -(val & (sign_bit - 1)) & U64_MASK


# -------- direct decoding --------


@dataclass
class StructState:
    """Last decoded value of every Value node, keyed by its name path."""

    values: dict[tuple[str, ...], int | str] = field(default_factory=dict)

    def get(self, *path: str) -> int | str | None:
        return self.values.get(path)


def decode_tree(
    root: Node, source: ReadableSource, cursor: int, max_rows: int,
) -> tuple[list[AnnotationLine], StructState]:
    """Walk ``root`` depth-first and return its display rows and state."""
    out = AnnotationWriter(max_rows)
    state = StructState()

    def walk(node: Node, depth: int, path: tuple[str, ...]) -> bool:
        if isinstance(node, Folder):
            if not out.header(node.name, depth):
                return False
            return all(walk(child, depth + 1, path + (node.name,)) for child in node.children)
        if isinstance(node, Value):
            address = resolve_offset(node.offset, cursor)
            kind = node.kind
            if isinstance(kind, IntegerKind):
                raw = decode_int_kind(source.read(address, kind.width), kind)
                state.values[path + (node.name,)] = raw
                text = format_int(raw, signed=kind.signed, base=kind.base)
            elif isinstance(kind, StringKind):
                text = read_string(source, address, kind.length, kind.utf8)
                state.values[path + (node.name,)] = text
            else:
                raise TypeError(f"Unknown kind {kind!r}")
            return out.value(node.name, text)
        raise TypeError(f"Unknown node {node!r}")

    walk(root, 0, ())
    return out.lines, state


# -------- compilation --------


def compile_definition(root: Node) -> bytes:
    """Lower a tree to bytecode with identical decode semantics.

    Kept to check the two evaluators agree; ``load_struct`` decodes trees
    with :func:`decode_tree`.  Only widths 1, 2, 4 and 8 have a bytecode
    load, other widths raise :class:`StructDefinitionError`.
    """
    builder = ProgramBuilder()
    big_endian = False
    labels = 0

    def emit_offset(offset: Offset) -> None:
        if isinstance(offset, Absolute):
            builder.push_int(offset.address)
        else:
            builder.push_cursor()
            if offset.delta:
                builder.push_int(offset.delta).add()

    def emit(node: Node, depth: int) -> None:
        nonlocal big_endian, labels
        if isinstance(node, Folder):
            builder.push_str(node.name).header(depth).drop()
            for child in node.children:
                emit(child, depth + 1)
            return

        kind = node.kind
        emit_offset(node.offset)
        builder.dup()
        if isinstance(kind, StringKind):
            if kind.length is not None:
                builder.push_int(kind.length)
            builder.load_str(utf8=kind.utf8, sized=kind.length is not None)
            builder.push_str(node.name).out_str()
            return

        if kind.width not in LOADABLE_WIDTHS:
            msg = f"{node.name}: width {kind.width} has no bytecode load"
            raise StructDefinitionError(msg)
        want_big = kind.endianness is Endianness.BIG
        if want_big != big_endian:
            # Switch just before the load; the offset sits on the stack already.
            builder.endian(want_big)
            big_endian = want_big

        builder.load_int(kind.width, signed=kind.sign is SignEncoding.TWOS_COMPLEMENT)
        sign_bit = 1 << (kind.width * 8 - 1)
        if kind.sign in (SignEncoding.ONES_COMPLEMENT, SignEncoding.SIGN_MAGNITUDE):
            labels += 1
            done = f"positive{labels}"
            builder.dup().push_int(sign_bit).and_().jz(done)
            if kind.sign is SignEncoding.ONES_COMPLEMENT:
                builder.push_int((sign_bit << 1) - 1).neg().add()
            else:
                builder.push_int(sign_bit - 1).and_().neg()
            builder.label(done)
        builder.push_str(node.name).out_int(base=kind.base, signed=kind.signed)

    emit(root, 0)
    builder.stop()
    return builder.build()


# -------- parsing --------


def _parse_int(raw: object, what: str) -> int:
    if isinstance(raw, bool):
        raise StructDefinitionError(f"{what}: expected an integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw, 0)
        except ValueError as exc:
            raise StructDefinitionError(f"{what}: {exc}") from exc
    raise StructDefinitionError(f"{what}: expected an integer, got {raw!r}")


def _parse_enum(enum_cls: type[enum.Enum], raw: object, what: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_cls)
        msg = f"{what}: {raw!r} is not one of {choices}"
        raise StructDefinitionError(msg) from exc


def _parse_offset(raw: object, name: str) -> Offset:
    if not isinstance(raw, cabc.Mapping) or len(raw) != 1:
        raise StructDefinitionError(f"{name}: offset needs exactly one of absolute/cursor")
    if "absolute" in raw:
        address = _parse_int(raw["absolute"], f"{name}.offset")
        if not 0 <= address <= U64_MASK:
            raise StructDefinitionError(f"{name}: absolute offset out of range")
        return Absolute(address)
    if "cursor" in raw:
        return RelativeToCursor(_parse_int(raw["cursor"], f"{name}.offset"))
    raise StructDefinitionError(f"{name}: unknown offset form {sorted(raw)}")


def _parse_kind(raw: object, name: str) -> Kind:
    if not isinstance(raw, cabc.Mapping) or len(raw) != 1:
        raise StructDefinitionError(f"{name}: kind needs exactly one of integer/string")
    form = next(iter(raw))
    body = raw[form]
    if not isinstance(body, cabc.Mapping):
        raise StructDefinitionError(f"{name}: {form} kind must be an object")
    if form == "integer":
        return IntegerKind(
            width=_parse_int(body.get("width"), f"{name}.width"),
            endianness=_parse_enum(Endianness, body.get("endian", "little"), f"{name}.endian"),
            sign=_parse_enum(SignEncoding, body.get("sign", "unsigned"), f"{name}.sign"),
            base=_parse_int(body.get("base", 10), f"{name}.base"),
        )
    if form == "string":
        encoding = body.get("encoding", "utf-8")
        if encoding not in ("utf-8", "ascii"):
            raise StructDefinitionError(f"{name}: unknown encoding {encoding!r}")
        length = body.get("length")
        return StringKind(
            utf8=encoding == "utf-8",
            length=None if length is None else _parse_int(length, f"{name}.length"),
        )
    raise StructDefinitionError(f"{name}: unknown kind {sorted(raw)}")


def parse_definition(raw: object) -> Node:
    """Build a tree from its JSON representation."""
    if not isinstance(raw, cabc.Mapping) or not isinstance(raw.get("name"), str):
        raise StructDefinitionError(f"Struct node needs a name: {raw!r}")
    name = raw["name"]
    if "children" in raw:
        children = raw["children"]
        if not isinstance(children, list):
            raise StructDefinitionError(f"{name}: children must be a list")
        return Folder(name, tuple(parse_definition(child) for child in children))
    if "offset" not in raw or "kind" not in raw:
        raise StructDefinitionError(f"{name}: needs children, or offset and kind")
    return Value(name, _parse_offset(raw["offset"], name), _parse_kind(raw["kind"], name))


# -------- loaded structs --------


class Struct(Protocol):
    """A named annotation source the session can activate."""

    name: str

    def annotate(
        self, source: ReadableSource, cursor: int, max_rows: int,
    ) -> list[AnnotationLine]:
        """Return the rows for ``cursor``; raises on decode errors."""


@dataclass
class BytecodeStruct:
    name: str
    code: bytes

    def annotate(
        self, source: ReadableSource, cursor: int, max_rows: int,
    ) -> list[AnnotationLine]:
        return run_program(self.code, source, cursor, max_rows)


@dataclass
class TreeStruct:
    name: str
    root: Node
    state: StructState = field(default_factory=StructState)

    def annotate(
        self, source: ReadableSource, cursor: int, max_rows: int,
    ) -> list[AnnotationLine]:
        lines, self.state = decode_tree(self.root, source, cursor, max_rows)
        return lines


def load_struct(name: str, path: str | os.PathLike[str]) -> Struct:
    """Load a struct file; ``.json`` files are trees, anything else bytecode."""
    file_path = Path(path)
    if file_path.suffix.lower() == ".json":
        with file_path.open("r", encoding="utf-8") as stream:
            try:
                raw = json.load(stream)
            except json.JSONDecodeError as exc:
                raise StructDefinitionError(f"{file_path}: {exc}") from exc
        return TreeStruct(name, parse_definition(raw))
    return BytecodeStruct(name, file_path.read_bytes())
