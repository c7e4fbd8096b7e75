"""
QEMU virtual machine for the regression run.

QEMU is spawned under pexpect with its QMP control channel on stdio. The
guest's first serial port is exported over TCP and read by the monitor.
"""

import json
import subprocess
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

import pexpect

from sysreg.transport import connect_serial

LAUNCH_TIMEOUT = 30
POWER_OFF_TIMEOUT = 10


class VmError(Exception):
    """A virtual machine operation failed."""


class PowerOffError(VmError):
    """The VM could not be stopped and may still be running."""


class VmState(Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    TRANSITIONAL = "transitional"


class QmpKeyboard:
    """Keyboard of a running QEMU machine, fed with raw set 1 scancodes."""

    def __init__(self, machine: "QemuMachine"):
        self.machine = machine

    @staticmethod
    def key_event(code: int) -> dict:
        # Bit 7 marks the release code of a key
        return {
            "type": "key",
            "data": {
                "down": not code & 0x80,
                "key": {"type": "number", "data": code & 0x7F},
            },
        }

    def put_scancode(self, code: int) -> None:
        self.machine.qmp("input-send-event", {"events": [self.key_event(code)]})


class QemuMachine:
    """One test machine and the QEMU process currently running it."""

    def __init__(
        self,
        name: str,
        directory: Path,
        memory: int = 256,
        qemu: str = "qemu-system-i386",
        iso: Optional[str] = None,
        host: str = "127.0.0.1",
    ):
        self.name = name
        self.directory = directory
        self.memory = memory
        self.qemu = qemu
        self.iso = iso
        self.host = host
        self.serial_port: Optional[int] = None
        self.child: Optional[pexpect.spawn] = None
        self._quitting = False

    @property
    def disk(self) -> Path:
        return self.directory / f"{self.name}.qcow2"

    def configure_serial_channel(self, port: int) -> None:
        self.serial_port = port

    def command(self) -> list[str]:
        """Build the QEMU command line."""
        if self.serial_port is None:
            raise VmError(f"No serial channel configured for {self.name}")
        cmd = [
            self.qemu,
            "-name", self.name,
            "-m", str(self.memory),
            "-drive", f"file={self.disk},format=qcow2,if=ide",
            "-serial", f"tcp:{self.host}:{self.serial_port},server=on,wait=off",
            "-qmp", "stdio",
            "-display", "none",
        ]
        if self.iso:
            # An empty disk is not bootable, so the first boot falls through to the CD
            cmd += ["-cdrom", self.iso, "-boot", "order=cd"]
        return cmd

    def launch(self) -> bool:
        """Start QEMU and open its control channel. Returns False if it did not come up."""
        cmd = self.command()
        try:
            self.child = pexpect.spawn(cmd[0], cmd[1:], encoding="utf-8", echo=False, timeout=LAUNCH_TIMEOUT)
            self.child.expect('"QMP"')
            self.qmp("qmp_capabilities")
        except (pexpect.ExceptionPexpect, VmError) as e:
            print(f"Error starting VM: {e}", file=sys.stderr)
            self.release()
            return False
        self._quitting = False
        return True

    def qmp(self, command: str, arguments: Optional[dict] = None):
        """Execute a QMP command and return its result."""
        if self.child is None:
            raise VmError(f"{self.name} is not running")
        message = {"execute": command}
        if arguments:
            message["arguments"] = arguments
        try:
            self.child.sendline(json.dumps(message))
            while True:
                line = self.child.readline()
                if not line:
                    raise VmError(f"QEMU closed its control channel during {command}")
                try:
                    reply = json.loads(line)
                except json.JSONDecodeError:
                    continue
                # Asynchronous events can arrive before the reply
                if "return" in reply:
                    return reply["return"]
                if "error" in reply:
                    raise VmError(f"{command} failed: {reply['error'].get('desc', reply['error'])}")
        except pexpect.ExceptionPexpect as e:
            raise VmError(f"{command} failed: {e}") from e

    def state(self) -> VmState:
        if self.child is None or not self.child.isalive():
            return VmState.OFFLINE
        if self._quitting:
            return VmState.TRANSITIONAL
        return VmState.ONLINE

    def power_off(self) -> None:
        """Stop the guest, killing QEMU if it does not quit on request."""
        if self.child is None:
            return
        self._quitting = True
        try:
            self.child.sendline(json.dumps({"execute": "quit"}))
            self.child.expect(pexpect.EOF, timeout=POWER_OFF_TIMEOUT)
        except pexpect.TIMEOUT:
            print(f"[SYSREG] {self.name} ignored quit, killing QEMU")
            if not self.child.terminate(force=True):
                raise VmError(f"Could not kill QEMU process {self.child.pid}")
        except (pexpect.ExceptionPexpect, OSError) as e:
            raise VmError(f"Failed to shut down {self.name}: {e}") from e

    def release(self) -> None:
        """Close the control channel and forget the QEMU process."""
        if self.child is None:
            return
        try:
            self.child.close(force=True)
        except (pexpect.ExceptionPexpect, OSError) as e:
            print(f"[SYSREG] Error closing QEMU session: {e}", file=sys.stderr)
        self.child = None
        self._quitting = False

    def keyboard(self) -> QmpKeyboard:
        return QmpKeyboard(self)

    def open_console(self):
        if self.serial_port is None:
            raise VmError(f"No serial channel configured for {self.name}")
        return connect_serial(self.host, self.serial_port)


def find_or_create(name: str, base_dir: Path, **kwargs) -> QemuMachine:
    """Open the machine directory for name, creating it on first use."""
    directory = Path(base_dir) / name
    if not directory.is_dir():
        print("[SYSREG] creating VM")
        try:
            directory.mkdir(parents=True)
        except OSError as e:
            raise VmError(f"Creating the VM failed: {e}") from e
    return QemuMachine(name, directory, **kwargs)


def provision_disk(path: Path, size: str, qemu_img: str = "qemu-img") -> None:
    """Replace the boot disk at path with a fresh, empty image."""
    if path.exists():
        try:
            path.unlink()
        except OSError as e:
            raise VmError(f"Could not delete existing HDD: {e}") from e
    try:
        subprocess.run(
            [qemu_img, "create", "-f", "qcow2", str(path), size],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise VmError(f"Creating the HDD failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise VmError(f"Creating the HDD failed: {e}") from e
