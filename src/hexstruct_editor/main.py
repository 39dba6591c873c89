#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10"
# dependencies = ["numpy", "matplotlib", "Pillow"]
# ///

"""Hex editor with undo log and live struct annotations."""

# mypy: ignore-errors

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import TYPE_CHECKING, Any, TypeAlias

if __package__ in (None, ""):
    PACKAGE_ROOT = os.path.dirname(os.path.dirname(__file__))
    if PACKAGE_ROOT not in sys.path:
        sys.path.insert(0, PACKAGE_ROOT)

import numpy as np

from hexstruct_editor.byte_source import ByteSource
from hexstruct_editor.config import Config, ConfigError
from hexstruct_editor.edit_log import EditLog, EditLogError
from hexstruct_editor.input_events import EventReader, FdByteStream, KeyEvent
from hexstruct_editor.screen import STRUCT_COLUMN, ScreenLine, compose_screen, screen_text
from hexstruct_editor.session import CommandError, EditingSession
from hexstruct_editor.structs import Struct, StructDefinitionError, load_struct
from hexstruct_editor.viewport import WHEEL_DOWN, WHEEL_UP, PointerEvent

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from numpy import ndarray as NDArray
    from matplotlib.backend_bases import MouseEvent
    from matplotlib.backend_bases import KeyEvent as MplKeyEvent
    from PIL import ImageFont

    FreeTypeFont = ImageFont.FreeTypeFont
else:
    NDArray: TypeAlias = Any
    FreeTypeFont: TypeAlias = Any

SCREEN_COLUMNS = STRUCT_COLUMN + 40

BACKGROUND = (0, 0, 0)
FOREGROUND = (170, 170, 170)

# style -> (foreground, background); ``None`` keeps the underlying colour
PALETTE: dict[str, tuple[tuple[int, int, int] | None, tuple[int, int, int] | None]] = {
    "address": ((85, 255, 255), None),
    "separator": ((85, 85, 85), None),
    "active-line": ((255, 255, 255), (0, 0, 85)),
    "cursor": ((0, 0, 0), (170, 170, 170)),
    "active-char": ((0, 0, 0), (170, 170, 170)),
    "mode-read": ((85, 255, 85), None),
    "mode-modify": ((255, 255, 85), None),
    "mode-replace": ((255, 85, 85), None),
    "loc": ((85, 255, 255), None),
    "error": ((255, 255, 255), (170, 0, 0)),
    "warning": ((0, 0, 0), (170, 85, 0)),
    "h0": ((255, 255, 255), (0, 0, 170)),
    "h1": ((255, 255, 255), (0, 170, 170)),
    "h2": ((255, 255, 85), None),
    "h3+": ((255, 255, 255), None),
}

# matplotlib names that differ from the ones the session expects
KEY_ALIASES = {"return": "enter", "esc": "escape", "page_up": "pageup", "page_down": "pagedown"}
MOUSE_BUTTONS = {1: 0, 2: 1, 3: 2}


def pick_mono_font(size: int = 13) -> FreeTypeFont:
    """Return a readable monospace font, falling back to Pillow's default."""
    try:
        from matplotlib import font_manager as fm
        from PIL import ImageFont
    except ModuleNotFoundError as exc:  # pragma: no cover
        msg = "Font rendering requires both Pillow and Matplotlib"
        raise RuntimeError(msg) from exc

    path = fm.findfont("DejaVu Sans Mono", fallback_to_default=True)
    try:
        return ImageFont.truetype(path, size=size)
    except OSError:  # pragma: no cover - Pillow fallback path
        return ImageFont.load_default()


def cell_size(font: FreeTypeFont) -> tuple[int, int]:
    """Return the ``(width, height)`` of one character cell in pixels."""
    try:
        left, _top, right, _bottom = font.getbbox("M")
        ascent, descent = font.getmetrics()
    except AttributeError:
        return 8, 12
    return max(8, right - left), max(12, ascent + descent)


def render_screen(lines: list[ScreenLine], font: FreeTypeFont) -> NDArray:
    """Paint composed screen lines into an RGB image."""
    try:
        from PIL import Image, ImageDraw
    except ModuleNotFoundError as exc:  # pragma: no cover
        raise RuntimeError("Rendering the screen requires Pillow") from exc

    cw, ch = cell_size(font)
    img = Image.new("RGB", (SCREEN_COLUMNS * cw, max(1, len(lines)) * ch), color=BACKGROUND)
    draw = ImageDraw.Draw(img)
    for y, line in enumerate(lines):
        top = y * ch
        draw.text((0, top), line.text, fill=FOREGROUND, font=font)
        for span in line.spans:
            fg, bg = PALETTE.get(span.style, (None, None))
            if bg is not None:
                draw.rectangle(
                    [span.start * cw, top, span.end * cw - 1, top + ch - 1], fill=bg,
                )
            for x in range(span.start, min(span.end, len(line.text))):
                draw.text((x * cw, top), line.text[x], fill=fg or FOREGROUND, font=font)
    return np.asarray(img, dtype=np.uint8)


def translate_key(key: str | None) -> str | None:
    """Map a matplotlib key name onto the session's key names."""
    if not key:
        return None
    key = KEY_ALIASES.get(key, key)
    if key in ("shift", "control", "alt", "super", "cmd") or key.startswith("alt+"):
        return None
    if key.startswith("shift+") and len(key) == 7:
        return key[-1].upper()
    return key


def mouse_to_pointer(
    event: MouseEvent, cell: tuple[int, int],
) -> PointerEvent | None:
    """Convert a click or scroll on the screen image into a pointer report."""
    if event.xdata is None or event.ydata is None:
        return None
    column = int((event.xdata + 0.5) // cell[0])
    row = int((event.ydata + 0.5) // cell[1])
    if event.name == "scroll_event":
        button = WHEEL_UP if event.button == "up" else WHEEL_DOWN
        return PointerEvent(button, column, row)
    button = MOUSE_BUTTONS.get(int(event.button or 0))
    if button is None:
        return None
    return PointerEvent(button, column, row)


# -------- session setup --------


def load_structs(paths: list[tuple[str, str]]) -> dict[str, Struct]:
    """Load every ``(name, path)`` pair, skipping files that fail to parse."""
    structs: dict[str, Struct] = {}
    for name, path in paths:
        try:
            structs[name] = load_struct(name, path)
        except (OSError, StructDefinitionError) as exc:
            logger.warning("Skipping struct %s (%s): %s", name, path, exc)
    return structs


def open_session(args: argparse.Namespace) -> tuple[EditingSession, ByteSource, EditLog]:
    """Open the file, its edit log and the configured structs."""
    config = Config.load(args.config_dir)
    source = ByteSource(args.path)
    try:
        log = EditLog.open(config.undo_path_for(args.path))
    except Exception:
        source.close()
        raise
    entries = [(entry.name, os.fspath(entry.path)) for entry in config.structs]
    entries.extend((os.path.splitext(os.path.basename(p))[0], p) for p in args.struct)
    session = EditingSession(source, log, load_structs(entries), height=args.rows)
    if args.activate:
        try:
            session.activate_struct(args.activate)
        except CommandError:
            log.close()
            source.close()
            raise
    session.refresh_struct()
    return session, source, log


def run_headless(session: EditingSession, reader: EventReader) -> None:
    """Feed decoded input events to ``session`` until quit or end of input."""
    while not session.quit_requested:
        event = reader.next_event()
        if event is None:
            break
        if isinstance(event, KeyEvent):
            session.handle_key(event.key)
        else:
            session.handle_pointer(event)


def run_viewer(session: EditingSession, font_size: int) -> None:
    """Show the session in a matplotlib window until it asks to quit."""
    try:
        import matplotlib.pyplot as plt
    except ModuleNotFoundError as exc:  # pragma: no cover - viewer path only
        raise RuntimeError("Matplotlib is required to run the editor window") from exc

    for name in list(plt.rcParams):
        if name.startswith("keymap."):
            plt.rcParams[name] = []

    font = pick_mono_font(font_size)
    cell = cell_size(font)
    fig, ax = plt.subplots(figsize=(12, 7))
    fig.subplots_adjust(left=0, right=1, top=1, bottom=0)
    ax.set_axis_off()
    im = ax.imshow(render_screen(compose_screen(session), font), interpolation="nearest")

    def redraw() -> None:
        if session.quit_requested:
            plt.close(fig)
            return
        im.set_data(render_screen(compose_screen(session), font))
        fig.canvas.draw_idle()

    def on_key(event: MplKeyEvent) -> None:
        key = translate_key(event.key)
        if key is not None:
            session.handle_key(key)
            redraw()

    def on_mouse(event: MouseEvent) -> None:
        if event.inaxes != ax:
            return
        pointer = mouse_to_pointer(event, cell)
        if pointer is not None:
            session.handle_pointer(pointer)
            redraw()

    cid_k = fig.canvas.mpl_connect("key_press_event", on_key)
    cid_b = fig.canvas.mpl_connect("button_press_event", on_mouse)
    cid_s = fig.canvas.mpl_connect("scroll_event", on_mouse)
    plt.show()
    _ = (cid_k, cid_b, cid_s)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Hex editor with a crash-safe undo log and struct annotations",
    )
    p.add_argument("path", help="file to view and edit")
    p.add_argument("--rows", type=int, default=25, help="screen height in rows")
    p.add_argument("--font-size", type=int, default=13)
    p.add_argument(
        "--config-dir",
        default=None,
        help="directory holding config.json and the undo logs (default ~/.hexstruct)",
    )
    p.add_argument(
        "--struct",
        action="append",
        default=[],
        metavar="PATH",
        help="extra struct file (.json tree or raw bytecode); may repeat",
    )
    p.add_argument("--activate", metavar="NAME", help="struct to show at startup")
    p.add_argument(
        "--headless",
        action="store_true",
        help="read raw terminal input from stdin and print the final screen",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    return p


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns the process exit status."""
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if args.rows < 3:
        print("--rows must be at least 3", file=sys.stderr)
        return 2

    try:
        session, source, log = open_session(args)
    except (OSError, EditLogError, ConfigError, ValueError) as exc:
        logger.error("Startup failed: %s", exc)
        print(f"{args.path}: {exc}", file=sys.stderr)
        return 1

    with source, log:
        if args.headless:
            run_headless(session, EventReader(FdByteStream(sys.stdin.fileno())))
            print(screen_text(compose_screen(session)))
        else:
            run_viewer(session, args.font_size)
    return 0


if __name__ == "__main__":
    sys.exit(main())
