"""
Watch the guest's debug console during one boot attempt.

The monitor reads the serial stream character by character, cuts it into
chunks, echoes every chunk and reacts to the kernel debugger prompts until
it can hand back a verdict for the attempt.
"""

import queue
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, TextIO

import pexpect

from sysreg.injector import (
    BACKTRACE,
    DISMISS_ASSERT,
    PAGER_NEXT,
    Injector,
    Keyboard,
    RawInjector,
    ScancodeInjector,
)
from sysreg.markers import CHUNK_CAPACITY, Marker, classify, read_chunk

POLL_INTERVAL = 0.2


class Verdict(Enum):
    CHECKPOINT_REACHED = "checkpoint reached"
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(frozen=True)
class MonitorOutcome:
    """Result published by a monitoring session, exactly once."""
    verdict: Verdict
    timed_out: bool = False


class _Cancelled(Exception):
    pass


class Watchdog:
    """Inactivity timer that calls on_expire unless reset in time."""

    def __init__(self, timeout: float, on_expire):
        self.timeout = timeout
        self.on_expire = on_expire
        self.expired = False
        self._deadline = 0.0
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="sysreg-watchdog", daemon=True)

    def start(self) -> None:
        self.reset()
        self._thread.start()

    def reset(self) -> None:
        with self._lock:
            self._deadline = time.monotonic() + self.timeout

    def stop(self) -> None:
        self._stopped.set()

    def _run(self) -> None:
        while True:
            with self._lock:
                remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                self.expired = True
                self.on_expire()
                return
            if self._stopped.wait(remaining):
                return


class StreamMonitor:
    """Classify console output for one stage and decide the attempt's verdict."""

    def __init__(
        self,
        stream,
        keyboard: Keyboard,
        checkpoint: str,
        *,
        watchdog_timeout: float = 60,
        duplicate_line_limit: int = 1000,
        transcript: Optional[Path] = None,
        console: Optional[TextIO] = None,
        capacity: int = CHUNK_CAPACITY,
    ):
        self.stream = stream
        self.checkpoint = checkpoint
        self.watchdog_timeout = watchdog_timeout
        self.duplicate_line_limit = duplicate_line_limit
        self.transcript = transcript
        self.console = console or sys.stdout
        self.capacity = capacity
        self.cancelled = threading.Event()

        self._scancodes = ScancodeInjector(keyboard)
        self._raw = RawInjector(stream)
        self._verdict = Verdict.CONTINUE
        self._last_line = ""
        self._repeat_count = 0
        self._debugger_hits = 0
        self._raw_mode = False

    @property
    def injector(self) -> Injector:
        return self._raw if self._raw_mode else self._scancodes

    def cancel(self) -> None:
        self.cancelled.set()

    def run(self) -> MonitorOutcome:
        """Read chunks until a terminal marker, end of stream or inactivity timeout."""
        watchdog = Watchdog(self.watchdog_timeout, self.cancel)
        transcript = None
        timed_out = False
        try:
            if self.transcript is not None:
                transcript = open(self.transcript, "a", encoding="utf-8")
            watchdog.start()
            while True:
                chunk = read_chunk(self._read_char, self.capacity)
                if chunk is None:
                    break
                watchdog.reset()
                self._echo(chunk, transcript)
                if self._handle(chunk):
                    break
        except _Cancelled:
            timed_out = True
        except (OSError, pexpect.ExceptionPexpect) as e:
            print(f"[SYSREG] Error while reading debug output: {e}", file=sys.stderr)
        finally:
            watchdog.stop()
            try:
                self.stream.close()
            except OSError as e:
                print(f"[SYSREG] Error closing debug stream: {e}", file=sys.stderr)
            if transcript is not None:
                transcript.close()

        return MonitorOutcome(self._verdict, timed_out)

    def _read_char(self) -> Optional[str]:
        while not self.cancelled.is_set():
            try:
                data = self.stream.read_nonblocking(1, timeout=POLL_INTERVAL)
            except pexpect.TIMEOUT:
                continue
            except pexpect.EOF:
                return None
            # An incomplete multibyte sequence decodes to ""
            if data:
                return data
        raise _Cancelled()

    def _echo(self, chunk: str, transcript: Optional[TextIO]) -> None:
        self.console.write(chunk)
        self.console.flush()
        if transcript is not None:
            transcript.write(chunk)

    def _handle(self, chunk: str) -> bool:
        """Act on one chunk. Returns True once the verdict is final."""
        # The same output over and over again means the guest is stuck in a loop
        if chunk == self._last_line:
            self._repeat_count += 1
            if self._repeat_count > self.duplicate_line_limit:
                print("[SYSREG] Test seems to be stuck in an endless loop, canceled!\n", file=self.console)
                self._verdict = Verdict.CONTINUE
                return True
        else:
            self._repeat_count = 0
            self._last_line = chunk

        marker = classify(chunk, self.checkpoint)
        if marker is Marker.RAW_MODE:
            self._raw_mode = True
        elif marker is Marker.DEBUGGER:
            self._debugger_hits += 1
            if self._debugger_hits > 1:
                # Back in the debugger, no reason to continue
                print(file=self.console)
                self._verdict = Verdict.CONTINUE
                return True
            self.injector.send_sequence(BACKTRACE)
        elif marker is Marker.PAGER:
            self.injector.send_sequence(PAGER_NEXT)
        elif marker is Marker.ASSERT:
            self.injector.send_sequence(DISMISS_ASSERT)
        elif marker is Marker.FAILURE:
            self._verdict = Verdict.ABORT
            return True
        elif marker is Marker.CHECKPOINT:
            self._verdict = Verdict.CHECKPOINT_REACHED
            return True
        return False


class MonitorSession:
    """Run a StreamMonitor on a worker thread and wait for its outcome."""

    def __init__(self, monitor: StreamMonitor, grace: float = 5.0):
        self.monitor = monitor
        self.grace = grace
        self._outcomes: "queue.Queue[MonitorOutcome]" = queue.Queue(maxsize=1)
        self._thread = threading.Thread(target=self._run, name="sysreg-monitor", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            outcome = self.monitor.run()
        except Exception as e:
            print(f"[SYSREG] Monitoring failed: {e}", file=sys.stderr)
            outcome = MonitorOutcome(Verdict.CONTINUE)
        self._outcomes.put(outcome)

    def wait(self) -> MonitorOutcome:
        """Block until the monitor publishes its outcome."""
        while True:
            try:
                return self._finish(self._outcomes.get(timeout=1.0))
            except queue.Empty:
                if not self.monitor.cancelled.is_set():
                    continue
            # Cancelled, but the worker may be stuck outside of a read
            try:
                outcome = self._outcomes.get(timeout=self.grace)
            except queue.Empty:
                # Grace is used up; the daemon worker is left behind
                return MonitorOutcome(Verdict.CONTINUE, timed_out=True)
            return self._finish(outcome)

    def _finish(self, outcome: MonitorOutcome) -> MonitorOutcome:
        if outcome.timed_out:
            self.monitor.cancel()
            self._thread.join(self.grace)
        else:
            self._thread.join()
        return outcome
