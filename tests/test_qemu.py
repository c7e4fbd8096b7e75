import json
import subprocess

import pexpect
import pytest

from sysreg import qemu
from sysreg.qemu import PowerOffError, QemuMachine, QmpKeyboard, VmError, VmState, find_or_create, provision_disk


class FakeChild:
    """Stands in for the pexpect child running QEMU with QMP on stdio."""

    def __init__(self, replies=(), alive=True, expect_error=None, terminates=True):
        self.replies = list(replies)
        self.sent = []
        self.alive = alive
        self.expect_error = expect_error
        self.terminates = terminates
        self.pid = 4242
        self.closed = False

    def sendline(self, line):
        self.sent.append(json.loads(line))

    def readline(self):
        return self.replies.pop(0) if self.replies else ""

    def expect(self, pattern, timeout=-1):
        if self.expect_error is not None:
            raise self.expect_error
        self.alive = False
        return 0

    def terminate(self, force=False):
        if self.terminates:
            self.alive = False
        return self.terminates

    def isalive(self):
        return self.alive

    def close(self, force=True):
        self.closed = True
        self.alive = False


def running_machine(tmp_path, child):
    machine = QemuMachine("testbot", tmp_path)
    machine.configure_serial_channel(9100)
    machine.child = child
    return machine


def test_command_line(tmp_path):
    machine = QemuMachine("testbot", tmp_path, memory=512, iso="bootcd.iso")
    machine.configure_serial_channel(9100)

    cmd = machine.command()

    assert cmd[0] == "qemu-system-i386"
    assert cmd[cmd.index("-m") + 1] == "512"
    assert cmd[cmd.index("-serial") + 1] == "tcp:127.0.0.1:9100,server=on,wait=off"
    assert cmd[cmd.index("-qmp") + 1] == "stdio"
    assert cmd[cmd.index("-drive") + 1] == f"file={tmp_path / 'testbot.qcow2'},format=qcow2,if=ide"
    assert cmd[cmd.index("-cdrom") + 1] == "bootcd.iso"


def test_command_needs_serial_channel(tmp_path):
    with pytest.raises(VmError):
        QemuMachine("testbot", tmp_path).command()


def test_key_events():
    assert QmpKeyboard.key_event(0x30) == {
        "type": "key",
        "data": {"down": True, "key": {"type": "number", "data": 0x30}},
    }
    release = QmpKeyboard.key_event(0xB0)
    assert release["data"]["down"] is False
    assert release["data"]["key"]["data"] == 0x30


def test_keyboard_sends_qmp_events(tmp_path):
    child = FakeChild(replies=['{"return": {}}\r\n'])
    machine = running_machine(tmp_path, child)

    machine.keyboard().put_scancode(0x9C)

    assert child.sent == [
        {
            "execute": "input-send-event",
            "arguments": {"events": [QmpKeyboard.key_event(0x9C)]},
        }
    ]


def test_qmp_skips_events_and_noise(tmp_path):
    child = FakeChild(replies=[
        "garbage\r\n",
        '{"timestamp": {"seconds": 1}, "event": "RESET"}\r\n',
        '{"return": {"status": "running"}}\r\n',
    ])
    machine = running_machine(tmp_path, child)

    assert machine.qmp("query-status") == {"status": "running"}


def test_qmp_error_reply(tmp_path):
    child = FakeChild(replies=['{"error": {"class": "GenericError", "desc": "no such key"}}\r\n'])
    with pytest.raises(VmError, match="no such key"):
        running_machine(tmp_path, child).qmp("input-send-event")


def test_qmp_closed_channel(tmp_path):
    with pytest.raises(VmError, match="closed"):
        running_machine(tmp_path, FakeChild()).qmp("query-status")


def test_qmp_without_process(tmp_path):
    with pytest.raises(VmError):
        QemuMachine("testbot", tmp_path).qmp("query-status")


def test_states(tmp_path):
    machine = QemuMachine("testbot", tmp_path)
    assert machine.state() is VmState.OFFLINE
    machine.child = FakeChild()
    assert machine.state() is VmState.ONLINE
    machine._quitting = True
    assert machine.state() is VmState.TRANSITIONAL
    machine.child.alive = False
    assert machine.state() is VmState.OFFLINE


def test_power_off_quits_qemu(tmp_path):
    child = FakeChild()
    machine = running_machine(tmp_path, child)

    machine.power_off()

    assert child.sent == [{"execute": "quit"}]
    assert machine.state() is VmState.OFFLINE


def test_power_off_kills_unresponsive_qemu(tmp_path):
    child = FakeChild(expect_error=pexpect.TIMEOUT("quit ignored"))
    machine = running_machine(tmp_path, child)

    machine.power_off()

    assert machine.state() is VmState.OFFLINE


def test_power_off_fails_when_qemu_survives(tmp_path):
    child = FakeChild(expect_error=pexpect.TIMEOUT("quit ignored"), terminates=False)
    machine = running_machine(tmp_path, child)

    with pytest.raises(VmError):
        machine.power_off()
    assert machine.state() is not VmState.OFFLINE


def test_release_forgets_process(tmp_path):
    child = FakeChild()
    machine = running_machine(tmp_path, child)

    machine.release()

    assert child.closed
    assert machine.child is None
    assert machine.state() is VmState.OFFLINE


def test_launch_failure_returns_false(tmp_path, capsys):
    machine = QemuMachine("testbot", tmp_path, qemu=str(tmp_path / "no-such-qemu"))
    machine.configure_serial_channel(9100)

    assert machine.launch() is False
    assert machine.child is None
    assert "Error starting VM" in capsys.readouterr().err


def test_find_or_create(tmp_path, capsys):
    machine = find_or_create("testbot", tmp_path / "vm", memory=128)
    assert machine.directory.is_dir()
    assert machine.memory == 128
    assert "creating VM" in capsys.readouterr().out

    again = find_or_create("testbot", tmp_path / "vm")
    assert again.directory == machine.directory
    assert "creating VM" not in capsys.readouterr().out


def test_provision_disk_replaces_image(tmp_path, monkeypatch):
    disk = tmp_path / "testbot.qcow2"
    disk.write_bytes(b"old contents")
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        assert not disk.exists()
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(qemu.subprocess, "run", fake_run)
    provision_disk(disk, "2G")

    assert calls == [["qemu-img", "create", "-f", "qcow2", str(disk), "2G"]]


def test_provision_disk_failure(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, "", "qemu-img: Invalid image size\n")

    monkeypatch.setattr(qemu.subprocess, "run", fake_run)
    with pytest.raises(VmError, match="Invalid image size"):
        provision_disk(tmp_path / "testbot.qcow2", "lots")


def test_power_off_error_is_a_vm_error():
    assert issubclass(PowerOffError, VmError)
