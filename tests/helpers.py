"""Shared fakes for the sysreg tests."""

from __future__ import annotations

import socket
from typing import List, Optional, Tuple

from pexpect import fdpexpect

from sysreg.qemu import VmError, VmState


def console_pair() -> Tuple[socket.socket, fdpexpect.fdspawn]:
    """Return (guest side socket, monitor side stream) connected to each other."""
    guest, host = socket.socketpair()
    stream = fdpexpect.fdspawn(host.detach(), encoding="utf-8", codec_errors="replace")
    return guest, stream


def scripted_console(output: str) -> fdpexpect.fdspawn:
    """A stream that yields output and then reaches end of file."""
    guest, stream = console_pair()
    guest.sendall(output.encode("utf-8"))
    guest.shutdown(socket.SHUT_WR)
    # Keep the guest end open so raw-mode injections can still be written
    stream.guest = guest
    return stream


class FakeKeyboard:
    def __init__(self) -> None:
        self.scancodes: List[int] = []

    def put_scancode(self, code: int) -> None:
        self.scancodes.append(code)


class FakeMachine:
    """VM double that replays one console script per successful launch."""

    name = "fake testbot"

    def __init__(
        self,
        scripts: List[str],
        launch_results: Optional[List[bool]] = None,
        power_off_error: Optional[Exception] = None,
        stays_online: bool = False,
    ) -> None:
        self.scripts = list(scripts)
        self.launch_results = list(launch_results or [])
        self.power_off_error = power_off_error
        self.stays_online = stays_online
        self.launches = 0
        self.consoles_opened = 0
        self.power_offs = 0
        self.releases = 0
        self.keyboard_device = FakeKeyboard()
        self._state = VmState.OFFLINE

    def launch(self) -> bool:
        self.launches += 1
        ok = self.launch_results.pop(0) if self.launch_results else True
        if ok:
            self._state = VmState.ONLINE
        return ok

    def open_console(self):
        self.consoles_opened += 1
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return scripted_console(script)

    def keyboard(self) -> FakeKeyboard:
        return self.keyboard_device

    def state(self) -> VmState:
        return self._state

    def power_off(self) -> None:
        self.power_offs += 1
        if self.power_off_error is not None:
            if not self.stays_online:
                self._state = VmState.OFFLINE
            raise self.power_off_error
        self._state = VmState.OFFLINE

    def release(self) -> None:
        self.releases += 1


class BrokenMachine(FakeMachine):
    """Launches, but fails while the session is being used."""

    def open_console(self):
        raise VmError("session lost")
