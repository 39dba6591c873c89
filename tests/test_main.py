# pyright: reportUnknownMemberType=false, reportUnknownArgumentType=false, reportUnannotatedClassAttribute=false, reportPrivateUsage=false

import json
import os
import sys
from pathlib import Path

import pytest

import hexstruct_editor.main as main
from hexstruct_editor import screen
from hexstruct_editor.byte_source import ByteSource
from hexstruct_editor.edit_log import EditLog
from hexstruct_editor.interpreter import AnnotationLine, LineKind
from hexstruct_editor.session import EditingSession
from hexstruct_editor.viewport import WHEEL_DOWN, WHEEL_UP, PointerEvent


class DummyStdin:
    def __init__(self, fd: int) -> None:
        self.fd = fd

    def fileno(self) -> int:
        return self.fd


class DummyMouseEvent:
    def __init__(self, name: str, xdata: float | None, ydata: float | None, button: object) -> None:
        self.name = name
        self.xdata = xdata
        self.ydata = ydata
        self.button = button


def feed_stdin(monkeypatch: pytest.MonkeyPatch, data: bytes) -> None:
    read_fd, write_fd = os.pipe()
    os.write(write_fd, data)
    os.close(write_fd)
    monkeypatch.setattr(sys, "stdin", DummyStdin(read_fd))


@pytest.fixture
def data_file(tmp_path: Path) -> Path:
    path = tmp_path / "data.bin"
    path.write_bytes(bytes(range(32)) + b"Hi there\n")
    return path


def test_translate_key() -> None:
    assert main.translate_key("return") == "enter"
    assert main.translate_key("ctrl+r") == "ctrl+r"
    assert main.translate_key("shift+m") == "M"
    assert main.translate_key("pagedown") == "pagedown"
    assert main.translate_key("shift") is None
    assert main.translate_key("alt+x") is None
    assert main.translate_key(None) is None


def test_mouse_to_pointer() -> None:
    cell = (8, 16)
    click = DummyMouseEvent("button_press_event", 8 * 20 + 3, 16 * 2 + 1, 1)
    right = DummyMouseEvent("button_press_event", 0, 0, 3)
    scroll = DummyMouseEvent("scroll_event", 4.0, 4.0, "down")
    outside = DummyMouseEvent("button_press_event", None, None, 1)

    assert main.mouse_to_pointer(click, cell) == PointerEvent(0, 20, 2)
    assert main.mouse_to_pointer(right, cell) == PointerEvent(2, 0, 0)
    assert main.mouse_to_pointer(scroll, cell) == PointerEvent(WHEEL_DOWN, 0, 0)
    assert main.mouse_to_pointer(outside, cell) is None
    up = DummyMouseEvent("scroll_event", 4.0, 4.0, "up")
    assert main.mouse_to_pointer(up, cell).button == WHEEL_UP


def test_char_glyphs() -> None:
    assert screen.char_glyph(0x00) == " "
    assert screen.char_glyph(0x0A) == "¶"
    assert screen.char_glyph(0x20) == "␣"
    assert screen.char_glyph(0x7F) == "·"
    assert screen.char_glyph(0xC3) == "·"
    assert screen.char_glyph(ord("A")) == "A"


def test_compose_screen_layout(tmp_path: Path, data_file: Path) -> None:
    with ByteSource(data_file) as source, EditLog.open(tmp_path / "log") as log:
        session = EditingSession(source, log, height=6)
        session.annotations = [AnnotationLine(LineKind.VALUE, "magic: 0x1")]
        lines = screen.compose_screen(session)

    assert len(lines) == 6
    first = lines[0].text
    assert first[:16] == " " * 15 + "0"
    assert first[16:19] == " │ "
    assert first[19:21] == "00"
    assert first[32:34] == "04"
    assert first[46:48] == "08"
    assert first[59:61] == "0c"
    assert first[71:73] == "│ "
    assert first[92:] == "magic: 0x1"
    assert lines[2].text[73:82] == "Hi␣there¶"
    assert lines[2].text[19:21] == "48"
    assert lines[2].text[46:48] == "0a"
    assert lines[2].text[49:51] == "  "
    assert set(lines[4].text) == {"─"}
    assert lines[5].text[7:16] == "READ-ONLY"
    assert lines[5].text.rstrip().endswith("0x0")
    styles = {span.style for span in lines[0].spans}
    assert {"address", "active-line", "cursor", "active-char"} <= styles


def test_compose_status_variants(tmp_path: Path, data_file: Path) -> None:
    with ByteSource(data_file) as source, EditLog.open(tmp_path / "log") as log:
        session = EditingSession(source, log, height=6)
        session.handle_key(":")
        session.handle_key("g")
        assert screen.compose_status(session).text.rstrip() == ":g"

        session.handle_key("escape")
        session.handle_key("u")
        status = screen.compose_status(session)
        assert status.text.startswith("Error: Cannot undo")
        assert status.spans[0].style == "error"


def test_render_screen_shape(tmp_path: Path, data_file: Path) -> None:
    font = main.pick_mono_font(10)
    with ByteSource(data_file) as source, EditLog.open(tmp_path / "log") as log:
        session = EditingSession(source, log, height=5)
        image = main.render_screen(screen.compose_screen(session), font)

    cw, ch = main.cell_size(font)
    assert image.shape == (5 * ch, main.SCREEN_COLUMNS * cw, 3)
    assert image.dtype.name == "uint8"
    assert image.any()


def test_headless_edit(
    tmp_path: Path, data_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str],
) -> None:
    config_dir = tmp_path / "cfg"
    feed_stdin(monkeypatch, b"R41\x1b")

    status = main.main([str(data_file), "--headless", "--rows", "6", "--config-dir", str(config_dir)])

    assert status == 0
    assert data_file.read_bytes()[0] == 0x41
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("               0 │ 41 01")
    assert "READ-ONLY" in out[-1]
    assert (config_dir / "undo-0").stat().st_size == 0x20
    config = json.loads((config_dir / "config.json").read_text())
    assert config["files"][str(data_file)] == {"undo_file_name": "undo-0"}


def test_headless_undo_across_runs(
    tmp_path: Path, data_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str],
) -> None:
    args = [str(data_file), "--headless", "--config-dir", str(tmp_path / "cfg")]
    feed_stdin(monkeypatch, b"Rff")
    assert main.main(args) == 0
    assert data_file.read_bytes()[0] == 0xFF

    feed_stdin(monkeypatch, b"Mu:q\n")
    assert main.main(args) == 0
    assert data_file.read_bytes()[0] == 0x00
    capsys.readouterr()


def test_headless_struct_panel(
    tmp_path: Path, data_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str],
) -> None:
    struct_path = tmp_path / "pair.json"
    struct_path.write_text(
        json.dumps(
            {
                "name": "pair",
                "children": [
                    {
                        "name": "word",
                        "offset": {"cursor": 0},
                        "kind": {"integer": {"width": 2, "endian": "big", "base": 16}},
                    }
                ],
            }
        )
    )
    feed_stdin(monkeypatch, b"\x1b[C")

    status = main.main(
        [
            str(data_file), "--headless", "--rows", "8",
            "--config-dir", str(tmp_path / "cfg"),
            "--struct", str(struct_path), "--activate", "pair",
        ]
    )

    assert status == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0][92:] == "pair"
    assert out[2][92:] == "word: 0x102"


def test_missing_file_fails_startup(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status = main.main([str(tmp_path / "nope.bin"), "--headless", "--config-dir", str(tmp_path)])

    assert status == 1
    assert "nope.bin" in capsys.readouterr().err


def test_corrupt_log_fails_startup(
    tmp_path: Path, data_file: Path, capsys: pytest.CaptureFixture[str],
) -> None:
    config_dir = tmp_path / "cfg"
    config_dir.mkdir()
    (config_dir / "undo-0").write_bytes(b"garbage!" * 2)
    (config_dir / "config.json").write_text(
        json.dumps({"files": {str(data_file): {"undo_file_name": "undo-0"}}, "structs": []})
    )

    status = main.main([str(data_file), "--headless", "--config-dir", str(config_dir)])

    assert status == 1
    assert "Not an undo file" in capsys.readouterr().err


def test_unknown_struct_fails_startup(
    tmp_path: Path, data_file: Path, capsys: pytest.CaptureFixture[str],
) -> None:
    status = main.main(
        [str(data_file), "--headless", "--config-dir", str(tmp_path / "cfg"), "--activate", "x"]
    )

    assert status == 1
    assert "Unknown struct" in capsys.readouterr().err
