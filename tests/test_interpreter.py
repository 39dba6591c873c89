# pyright: reportUnknownMemberType=false, reportPrivateUsage=false

import pytest

from hexstruct_editor import interpreter
from hexstruct_editor.byte_source import ShortRead
from hexstruct_editor.bytecode import U64_MASK, Op, ProgramBuilder, u64
from hexstruct_editor.interpreter import LineKind, StructMachine, format_int, run_program


class DummySource:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.reads: list[tuple[int, int]] = []

    def read(self, offset: int, length: int) -> bytes:
        self.reads.append((offset, length))
        if offset + length > len(self.data):
            raise ShortRead(f"Short read at {offset:#x}")
        return self.data[offset : offset + length]


def texts(lines: list[interpreter.AnnotationLine]) -> list[str]:
    return [line.text for line in lines]


@pytest.mark.parametrize(
    ("value", "signed", "base", "expected"),
    [
        (0, False, 16, "0"),
        (0, True, 7, "0"),
        (255, False, 16, "0xff"),
        (5, False, 2, "0b101"),
        (8, False, 8, "0o10"),
        (35, False, 36, "0[36]z"),
        (U64_MASK, False, 10, "18446744073709551615"),
        (U64_MASK, True, 10, "-1"),
        (-2 & U64_MASK, True, 16, "-0x2"),
        (1 << 63, True, 10, "-9223372036854775808"),
    ],
)
def test_format_int(value: int, signed: bool, base: int, expected: str) -> None:
    assert format_int(value, signed, base) == expected


def test_format_int_rejects_bad_base() -> None:
    with pytest.raises(ValueError):
        format_int(1, base=37)
    with pytest.raises(ValueError):
        format_int(1, base=1)


def test_little_endian_u32_at_offset_zero() -> None:
    code = (
        ProgramBuilder()
        .push_int(0).dup().load_int(4)
        .push_str("value").out_int()
        .stop().build()
    )
    lines = run_program(code, DummySource(b"\x01\x00\x00\x00"), cursor=0, max_rows=10)

    assert texts(lines) == ["value: 1"]
    assert lines[0].kind is LineKind.VALUE


def test_big_endian_and_signed_loads() -> None:
    code = (
        ProgramBuilder()
        .endian(True)
        .push_int(0).dup().load_int(4).push_str("be").out_int(base=16)
        .endian(False)
        .push_int(4).dup().load_int(2, signed=True).push_str("i16").out_int(signed=True)
        .build()
    )
    data = b"\x01\x02\x03\x04\xfe\xff"
    lines = run_program(code, DummySource(data), cursor=0, max_rows=10)

    assert texts(lines) == ["be: 0x1020304", "i16: -2"]


def test_cursor_relative_load() -> None:
    code = (
        ProgramBuilder()
        .push_cursor().push_int(-1).add().dup().load_int(1)
        .push_str("prev").out_int()
        .build()
    )
    source = DummySource(bytes(range(16)))
    lines = run_program(code, source, cursor=9, max_rows=10)

    assert texts(lines) == ["prev: 8"]
    assert source.reads == [(8, 1)]


def test_headers_and_separators() -> None:
    code = (
        ProgramBuilder()
        .push_str("top").header(0).drop()
        .push_int(0).dup().load_int(1).push_str("a").out_int()
        .push_str("inner").header(1).drop()
        .push_str("deep").header(4).drop()
        .build()
    )
    lines = run_program(code, DummySource(b"\x07"), cursor=0, max_rows=20)

    assert [line.kind for line in lines] == [
        LineKind.HEADER,
        LineKind.HEADER_PAD,
        LineKind.VALUE,
        LineKind.SEPARATOR,
        LineKind.HEADER,
        LineKind.HEADER_PAD,
        LineKind.HEADER,
        LineKind.HEADER_PAD,
    ]
    assert [line.style for line in lines if line.kind is LineKind.HEADER] == ["h0", "h1", "h3+"]


def test_header_pushes_visible_flag() -> None:
    code = (
        ProgramBuilder()
        .push_int(0)
        .push_str("folder").header(0)
        .push_str("flag").out_int()
        .build()
    )
    lines = run_program(code, DummySource(b""), cursor=0, max_rows=10)

    assert texts(lines)[-1] == "flag: 1"


def test_row_budget_stops_silently() -> None:
    builder = ProgramBuilder()
    for i in range(5):
        builder.push_int(i).dup().load_int(1).push_str(f"b{i}").out_int()
    builder.panic()
    lines = run_program(builder.build(), DummySource(bytes(5)), cursor=0, max_rows=3)

    assert texts(lines) == ["b0: 0", "b1: 0", "b2: 0"]


def test_jumps_are_relative_to_instruction_start() -> None:
    code = bytes([0xE0]) + u64(10) + bytes([0xFF, 0x00])
    assert run_program(code, DummySource(b""), cursor=0, max_rows=5) == []


def test_conditional_jumps() -> None:
    code = (
        ProgramBuilder()
        .push_int(0).jz("zero").panic()
        .label("zero")
        .push_int(3).jnz("nonzero").panic()
        .label("nonzero")
        .push_int(-1).jnn("positive")
        .push_int(0).push_int(1).push_str("negative").out_int()
        .label("positive")
        .build()
    )
    lines = run_program(code, DummySource(b""), cursor=0, max_rows=5)

    assert texts(lines) == ["negative: 1"]


def test_backward_jump_loop() -> None:
    # Counts 3 down to 0 in scratch cell 0 and prints each step.
    code = (
        ProgramBuilder()
        .push_int(3).push_int(0).scratch_store()
        .label("loop")
        .push_int(0).push_int(0).scratch_load().push_str("n").out_int()
        .push_int(0).scratch_load().push_int(-1).add()
        .dup().push_int(0).scratch_store()
        .jnz("loop")
        .build()
    )
    lines = run_program(code, DummySource(b""), cursor=0, max_rows=10)

    assert texts(lines) == ["n: 3", "n: 2", "n: 1"]


def test_panic_dumps_stack_top_first() -> None:
    code = ProgramBuilder().push_int(1).push_int(0x20).panic().build()

    with pytest.raises(interpreter.StructPanic, match=r"^Stack: 0x20 0x1$"):
        run_program(code, DummySource(b""), cursor=0, max_rows=5)


@pytest.mark.parametrize(
    ("code", "message"),
    [
        (bytes([0x42]), "Unknown opcode 42"),
        (bytes([0x10, 0x01]) + bytes([0x18, 0x09]), "Truncated instruction"),
        (bytes([0x10]) + u64(0) + bytes([0x18, 0x09]), "Unknown opcode 18 9"),
        (bytes([0x01, 0x05]), "Unknown opcode 1 5"),
    ],
)
def test_malformed_programs(code: bytes, message: str) -> None:
    with pytest.raises(interpreter.InterpreterError, match=message):
        run_program(code, DummySource(bytes(8)), cursor=0, max_rows=5)


def test_stack_underflow() -> None:
    with pytest.raises(interpreter.StackUnderflowError):
        run_program(bytes([0x80]), DummySource(b""), cursor=0, max_rows=5)
    with pytest.raises(interpreter.StackUnderflowError):
        run_program(bytes([0x2A, 0x00]), DummySource(b""), cursor=0, max_rows=5)


def test_short_read_propagates() -> None:
    code = ProgramBuilder().push_int(6).load_int(4).build()

    with pytest.raises(ShortRead):
        run_program(code, DummySource(bytes(8)), cursor=0, max_rows=5)


def test_string_loads() -> None:
    code = (
        ProgramBuilder()
        .push_int(0).dup().load_str().push_str("nul").out_str()
        .push_int(3).dup().push_int(1).load_str(sized=True).push_str("sized").out_str()
        .push_int(5).dup().push_int(2).load_str(utf8=False, sized=True)
        .push_str("ascii").out_str()
        .build()
    )
    data = b"hi\x00\xc3\xa9ok"
    lines = run_program(code, DummySource(data), cursor=0, max_rows=5)

    assert texts(lines) == ["nul: hi", "sized: é", "ascii: ok"]


def test_invalid_strings() -> None:
    ascii_code = ProgramBuilder().push_int(0).push_int(1).load_str(utf8=False, sized=True).build()
    with pytest.raises(interpreter.StringEncodingError, match="ASCII"):
        run_program(ascii_code, DummySource(b"\xc3"), cursor=0, max_rows=5)

    utf8_code = ProgramBuilder().push_int(0).load_str().build()
    with pytest.raises(interpreter.StringEncodingError, match="utf-8"):
        run_program(utf8_code, DummySource(b"\xff\x00"), cursor=0, max_rows=5)


def test_push_str_counts_characters() -> None:
    code = (
        ProgramBuilder()
        .push_int(0).push_str("über").push_str("word").out_str()
        .build()
    )
    assert texts(run_program(code, DummySource(b""), cursor=0, max_rows=5)) == ["word: über"]


def test_scratch_read_before_write() -> None:
    code = ProgramBuilder().push_int(4).scratch_load().build()

    with pytest.raises(interpreter.ScratchMemoryError):
        run_program(code, DummySource(b""), cursor=0, max_rows=5)


def test_scratch_grows_on_store() -> None:
    memory = interpreter.ScratchMemory(capacity=2)
    memory.store(100, U64_MASK)

    assert memory.load(100) == U64_MASK
    assert len(memory) == 1
    with pytest.raises(interpreter.ScratchMemoryError):
        memory.load(99)


def test_every_opcode_has_a_handler() -> None:
    assert set(StructMachine._HANDLERS) == set(Op)
    assert all(callable(handler) for handler in StructMachine._HANDLERS.values())


@pytest.mark.parametrize("base", [0, 1, 37])
def test_output_rejects_bad_base(base: int) -> None:
    code = ProgramBuilder().push_int(0).push_int(1).push_str("x").out_int(base=base).build()

    with pytest.raises(interpreter.InterpreterError, match=r"within 2\.\.36, but is \d+"):
        run_program(code, DummySource(b""), cursor=0, max_rows=5)


def test_step_limit() -> None:
    machine = StructMachine(bytes([0xE0]) + u64(0), DummySource(b""), 0, 5, max_steps=100)

    with pytest.raises(interpreter.InterpreterError, match="Step limit"):
        machine.run()


def test_arithmetic_wraps() -> None:
    code = (
        ProgramBuilder()
        .push_int(0)
        .push_int(U64_MASK).push_int(2).add()
        .push_str("sum").out_int()
        .push_int(0)
        .push_int(0xF0).push_int(0x3C).and_()
        .push_str("and").out_int(base=16)
        .push_int(0)
        .push_int(1).push_int(2).swap().neg()
        .push_str("neg").out_int(signed=True)
        .build()
    )
    lines = run_program(code, DummySource(b""), cursor=0, max_rows=5)

    assert texts(lines) == ["sum: 1", "and: 0x30", "neg: -1"]
