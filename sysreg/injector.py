"""
Simulated keyboard input for the guest.

Before the guest announces KDSERIAL, its debugger reads the VM keyboard, so
keys go in as scancodes. Afterwards it reads the serial line and the same
keys are written there as plain bytes.
"""

from typing import Iterable, Protocol

BACKTRACE = ("b", "t", "enter")
PAGER_NEXT = ("enter",)
DISMISS_ASSERT = ("o",)

# Set 1 scancodes: (make, release)
SCANCODES = {
    "b": (0x30, 0xB0),
    "t": (0x14, 0x94),
    "o": (0x18, 0x98),
    "enter": (0x1C, 0x9C),
}

RAW_BYTES = {
    "b": "b",
    "t": "t",
    "o": "o",
    "enter": "\r",
}


class Keyboard(Protocol):
    def put_scancode(self, code: int) -> None: ...


class Injector(Protocol):
    def send_sequence(self, keys: Iterable[str]) -> None: ...


class RawInjector:
    """Types keys by writing their bytes to the serial stream."""

    def __init__(self, stream):
        self.stream = stream

    def send_sequence(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.stream.send(RAW_BYTES[key])


class ScancodeInjector:
    """Types keys as make/release scancode pairs on the VM keyboard."""

    def __init__(self, keyboard: Keyboard):
        self.keyboard = keyboard

    def send_sequence(self, keys: Iterable[str]) -> None:
        for key in keys:
            make, release = SCANCODES[key]
            self.keyboard.put_scancode(make)
            self.keyboard.put_scancode(release)
