"""
Settings for a regression run.

Values come from the built-in defaults, then an optional TOML file, then the
command line.
"""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


class ConfigError(Exception):
    """Raised for unreadable or invalid configuration."""


@dataclass(frozen=True)
class Stage:
    """One boot of the test sequence and the marker that completes it."""
    name: str
    checkpoint: str


DEFAULT_STAGES = [
    Stage("first boot", "It's the final countdown..."),
    Stage("second boot", "It's the final countdown..."),
    Stage("third boot", "SYSREG_CHECKPOINT:THIRDBOOT_COMPLETE"),
]


@dataclass
class VmSettings:
    """Virtual machine used for the test."""
    name: str = "ReactOS Testbot"
    iso: Optional[str] = None
    memory: int = 256
    disk_size: str = "2G"
    qemu: str = "qemu-system-i386"
    serial_port: int = 9100
    base_dir: str = "vm"


@dataclass
class Settings:
    max_retries: int = 30
    timeout: float = 60
    max_cache_hits: int = 1000
    log: Optional[str] = "testbot.txt"
    vm: VmSettings = field(default_factory=VmSettings)
    stages: list[Stage] = field(default_factory=lambda: list(DEFAULT_STAGES))

    @property
    def log_path(self) -> Optional[Path]:
        if self.log is None:
            return None
        return Path(self.log).absolute()


def _positive_int(data: dict, key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return value


def _parse_stages(entries) -> list[Stage]:
    if not isinstance(entries, list) or not entries:
        raise ConfigError("stages must be a non-empty array of tables")
    stages = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("checkpoint"):
            raise ConfigError(f"stage {i + 1} needs a checkpoint string")
        stages.append(Stage(name=str(entry.get("name", f"stage {i + 1}")), checkpoint=str(entry["checkpoint"])))
    return stages


def parse_settings(data: dict) -> Settings:
    """Build Settings from a parsed TOML document."""
    settings = Settings()
    settings.max_retries = _positive_int(data, "max_retries", settings.max_retries)
    settings.max_cache_hits = _positive_int(data, "max_cache_hits", settings.max_cache_hits)

    timeout = data.get("timeout", settings.timeout)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"timeout must be a positive number of seconds, got {timeout!r}")
    settings.timeout = timeout

    # log = false disables the transcript
    log = data.get("log", settings.log)
    if log is False:
        settings.log = None
    elif isinstance(log, str) and log:
        settings.log = log
    else:
        raise ConfigError(f"log must be a file name or false, got {log!r}")

    vm = data.get("vm", {})
    if not isinstance(vm, dict):
        raise ConfigError("[vm] must be a table")
    defaults = VmSettings()
    settings.vm = VmSettings(
        name=str(vm.get("name", defaults.name)),
        iso=vm.get("iso", defaults.iso),
        memory=_positive_int(vm, "memory", defaults.memory),
        disk_size=str(vm.get("disk_size", defaults.disk_size)),
        qemu=str(vm.get("qemu", defaults.qemu)),
        serial_port=_positive_int(vm, "serial_port", defaults.serial_port),
        base_dir=str(vm.get("base_dir", defaults.base_dir)),
    )

    if "stages" in data:
        settings.stages = _parse_stages(data["stages"])

    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from a TOML file, or return the defaults."""
    if path is None:
        return Settings()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML in {path}: {e}") from e
    return parse_settings(data)
