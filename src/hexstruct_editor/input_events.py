"""Decode raw terminal input bytes into key names and pointer events.

One byte opens an event.  ESC opens a multi-byte sequence whose remaining
bytes are drained with a short timeout, up to :data:`MAX_SEQUENCE` bytes; a
second ESC ends the sequence and is kept for the next event.  Key names use
the same spelling as matplotlib key events (``"up"``, ``"pagedown"``,
``"ctrl+r"``...) so every front end drives the session the same way.
"""

from __future__ import annotations

import collections
import logging
import os
import re
import select
from dataclasses import dataclass
from typing import Protocol, TypeAlias

from .viewport import PointerEvent

logger = logging.getLogger(__name__)

ESC = 0x1B
MAX_SEQUENCE = 256
SEQUENCE_TIMEOUT = 0.05

SGR_MOUSE = re.compile(r"^\[<([0-9]+);([0-9]+);([0-9]+)([mM])$")
URXVT_MOUSE = re.compile(r"^\[([0-9]+);([0-9]+);([0-9]+)M$")
URXVT_BUTTON_BIAS = 32
URXVT_RELEASE = 3

# Longest prefixes first; whatever follows a match is pushed back as input.
ESCAPE_KEYS: tuple[tuple[str, str], ...] = (
    ("[1;5F", "ctrl+end"),
    ("[1;5H", "ctrl+home"),
    ("[5~", "pageup"),
    ("[6~", "pagedown"),
    ("[A", "up"),
    ("[B", "down"),
    ("[C", "right"),
    ("[D", "left"),
    ("[F", "end"),
    ("[H", "home"),
)


class ByteStream(Protocol):
    """Source of raw input bytes."""

    def read_byte(self, timeout: float | None) -> int | None:
        """Return the next byte, or ``None`` on timeout or end of input."""


class FdByteStream:
    """Reads single bytes from a file descriptor such as stdin."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    def read_byte(self, timeout: float | None) -> int | None:
        if timeout is not None:
            ready, _, _ = select.select([self.fd], [], [], timeout)
            if not ready:
                return None
        data = os.read(self.fd, 1)
        return data[0] if data else None


@dataclass(frozen=True)
class KeyEvent:
    key: str


InputEvent: TypeAlias = "KeyEvent | PointerEvent"


def key_name(byte: int) -> str:
    """Name a single-byte key press."""
    if byte in (0x0A, 0x0D):
        return "enter"
    if byte in (0x7F, 0x08):
        return "backspace"
    if byte == 0x09:
        return "tab"
    if byte < 0x20:
        return f"ctrl+{chr(byte + 0x60)}"
    return chr(byte)


def decode_pointer(seq: str) -> PointerEvent | None:
    """Decode an SGR (1006) or urxvt (1015) mouse report following ESC."""
    match = SGR_MOUSE.match(seq)
    if match:
        button, x, y = (int(match.group(i)) for i in range(1, 4))
        return PointerEvent(button, x - 1, y - 1, pressed=match.group(4) == "M")
    match = URXVT_MOUSE.match(seq)
    if match:
        button, x, y = (int(match.group(i)) for i in range(1, 4))
        button -= URXVT_BUTTON_BIAS
        return PointerEvent(button, x - 1, y - 1, pressed=button != URXVT_RELEASE)
    return None


class EventReader:
    """Turns a :class:`ByteStream` into :data:`InputEvent` objects."""

    def __init__(
        self,
        stream: ByteStream,
        timeout: float = SEQUENCE_TIMEOUT,
        max_length: int = MAX_SEQUENCE,
    ) -> None:
        self.stream = stream
        self.timeout = timeout
        self.max_length = max_length
        self._pending: collections.deque[int] = collections.deque()

    def _read(self, timeout: float | None) -> int | None:
        if self._pending:
            return self._pending.popleft()
        return self.stream.read_byte(timeout)

    def unread(self, data: bytes) -> None:
        self._pending.extend(data)

    def _read_sequence(self) -> bytes:
        seq = bytearray()
        while len(seq) < self.max_length:
            byte = self._read(self.timeout)
            if byte is None:
                break
            if byte == ESC:
                self._pending.appendleft(byte)
                break
            seq.append(byte)
        return bytes(seq)

    def _decode_escape(self, seq: bytes) -> InputEvent | None:
        if not seq:
            return KeyEvent("escape")
        text = seq.decode("latin-1")
        pointer = decode_pointer(text)
        if pointer is not None:
            return pointer
        for prefix, name in ESCAPE_KEYS:
            if text.startswith(prefix):
                self.unread(seq[len(prefix):])
                return KeyEvent(name)
        logger.debug("Ignoring unknown escape sequence %r", text)
        return None

    def next_event(self) -> InputEvent | None:
        """Block for the next event; ``None`` means the input has ended."""
        while True:
            byte = self._read(None)
            if byte is None:
                return None
            if byte != ESC:
                return KeyEvent(key_name(byte))
            event = self._decode_escape(self._read_sequence())
            if event is not None:
                return event
