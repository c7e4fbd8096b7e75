#!/usr/bin/env python3
"""
Run the boot regression test: prepare the test machine, then boot it through
every stage and exit with the overall status.
"""

import argparse
import sys
from pathlib import Path

from sysreg.config import ConfigError, Settings, load_settings
from sysreg.orchestrator import RunStatus, StageOrchestrator
from sysreg.qemu import VmError, find_or_create, provision_disk

CONFIG_ERROR_STATUS = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Unattended boot regression testing in a virtual machine")
    parser.add_argument("--config", "-c", type=Path, help="TOML file with run and VM settings")
    parser.add_argument("--max-retries", type=int, help="Boot attempts allowed per stage (default: 30)")
    parser.add_argument("--timeout", type=float, help="Seconds without debug output before an attempt is given up (default: 60)")
    parser.add_argument("--max-cache-hits", type=int,
                        help="Identical consecutive lines tolerated before the guest counts as stuck (default: 1000)")
    log = parser.add_mutually_exclusive_group()
    log.add_argument("--log", help="Transcript file for the debug output (default: testbot.txt)")
    log.add_argument("--no-log", action="store_true", help="Do not write a transcript")
    parser.add_argument("--name", help="Name of the test machine")
    parser.add_argument("--iso", help="Boot CD image")
    parser.add_argument("--memory", type=int, help="Guest memory in MB")
    parser.add_argument("--disk-size", help="Size of the boot disk, e.g. 2G")
    parser.add_argument("--qemu", help="QEMU system emulator binary")
    parser.add_argument("--serial-port", type=int, help="Local TCP port for the guest's serial port")
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Override settings with the options given on the command line."""
    for option in ("max_retries", "max_cache_hits", "memory", "serial_port"):
        value = getattr(args, option)
        if value is not None and value < 1:
            raise ConfigError(f"--{option.replace('_', '-')} must be positive")
    if args.timeout is not None and args.timeout <= 0:
        raise ConfigError("--timeout must be positive")

    if args.max_retries is not None:
        settings.max_retries = args.max_retries
    if args.timeout is not None:
        settings.timeout = args.timeout
    if args.max_cache_hits is not None:
        settings.max_cache_hits = args.max_cache_hits
    if args.no_log:
        settings.log = None
    elif args.log:
        settings.log = args.log

    for option in ("name", "iso", "memory", "disk_size", "qemu", "serial_port"):
        value = getattr(args, option)
        if value is not None:
            setattr(settings.vm, option, value)
    return settings


def prepare_machine(settings: Settings):
    """Open the test machine, attach its serial channel and give it an empty disk."""
    vm = settings.vm
    machine = find_or_create(vm.name, Path(vm.base_dir), memory=vm.memory, qemu=vm.qemu, iso=vm.iso)
    machine.configure_serial_channel(vm.serial_port)
    provision_disk(machine.disk, vm.disk_size)
    return machine


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = apply_args(load_settings(args.config), args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return CONFIG_ERROR_STATUS

    if settings.log_path is not None:
        print(f"[SYSREG] Serial log path: {settings.log_path}")

    try:
        machine = prepare_machine(settings)
    except VmError as e:
        print(f"[SYSREG] {e}", file=sys.stderr)
        return RunStatus.VM_ERROR

    return StageOrchestrator(machine, settings).run_all()


if __name__ == "__main__":
    sys.exit(main())
