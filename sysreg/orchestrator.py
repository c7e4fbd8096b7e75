"""
Boot the test machine once per attempt and walk through the test stages.

Each stage is retried from a fresh boot until the guest prints the stage's
checkpoint, reports a failure, or the retry budget runs out.
"""

import sys
from enum import IntEnum
from pathlib import Path
from typing import Optional

import pexpect

from sysreg.config import Settings, Stage
from sysreg.monitor import MonitorOutcome, MonitorSession, StreamMonitor, Verdict
from sysreg.qemu import PowerOffError, VmState


class RunStatus(IntEnum):
    """Overall result of a run, used as the process exit status."""
    SUCCESS = 0
    RETRIES_EXHAUSTED = 1
    ABORTED = 2
    VM_ERROR = 3


STATUS_MESSAGES = {
    RunStatus.SUCCESS: "Reached the checkpoint!",
    RunStatus.RETRIES_EXHAUSTED: "Failed to reach the checkpoint!!",
    RunStatus.ABORTED: "Testing process aborted!",
    RunStatus.VM_ERROR: "Testing process aborted, the VM could not be stopped!",
}


def clear_transcript(path: Optional[Path]) -> None:
    """Truncate the transcript so the next attempt starts a fresh capture."""
    if path is None:
        return
    try:
        with open(path, "w", encoding="utf-8"):
            pass
    except OSError as e:
        print(f"[SYSREG] Could not empty {path}: {e}", file=sys.stderr)


class StageOrchestrator:
    """Drive the machine through every stage of the regression test."""

    def __init__(self, machine, settings: Settings, stages: Optional[list[Stage]] = None):
        self.machine = machine
        self.settings = settings
        self.stages = stages if stages is not None else settings.stages

    def run_all(self) -> RunStatus:
        try:
            status = self._run_stages()
        except PowerOffError as e:
            print(f"[SYSREG] Failed to shutdown VM: {e}", file=sys.stderr)
            status = RunStatus.VM_ERROR
        print(f"[SYSREG] Status: {STATUS_MESSAGES[status]}")
        return status

    def _run_stages(self) -> RunStatus:
        for index, stage in enumerate(self.stages):
            verdict = self._run_stage(index, stage)
            if verdict is Verdict.ABORT:
                return RunStatus.ABORTED
            if verdict is not Verdict.CHECKPOINT_REACHED:
                print("[SYSREG] Maximum number of allowed retries exceeded, aborting!")
                return RunStatus.RETRIES_EXHAUSTED
        return RunStatus.SUCCESS

    def _run_stage(self, index: int, stage: Stage) -> Verdict:
        """Retry one stage until its checkpoint, an abort, or an empty retry budget."""
        last_stage = index == len(self.stages) - 1
        retries_left = self.settings.max_retries

        while retries_left > 0:
            # Only the decisive attempt is kept in the transcript
            clear_transcript(self.settings.log_path)
            verdict = self._attempt(index, stage, self.settings.max_retries - retries_left + 1)

            if verdict is Verdict.CHECKPOINT_REACHED:
                clear_transcript(self.settings.log_path)
                return verdict
            if verdict is Verdict.ABORT:
                return verdict

            retries_left -= 1
            retry = self.settings.max_retries - retries_left
            if last_stage:
                # The guest's test driver carries on with the next test after a reboot
                print(f"[SYSREG] Rebooting VM (retry {retry})")
            else:
                print(f"[SYSREG] Stage {index + 1} did not reach its checkpoint (retry {retry})")

        return Verdict.CONTINUE

    def _attempt(self, index: int, stage: Stage, attempt: int) -> Verdict:
        """Boot the machine once and monitor it. Only PowerOffError escapes."""
        try:
            if not self.machine.launch():
                return Verdict.CONTINUE
            print("\n\n")
            print(f"[SYSREG] Running stage {index + 1}, boot attempt {attempt}...")
            print(f"[SYSREG] Domain {self.machine.name} started.\n")
            sys.stdout.flush()
            try:
                outcome = self._monitor(stage)
            finally:
                self._shutdown()
        except PowerOffError:
            raise
        except Exception as e:
            print(f"[SYSREG] Running the VM failed with exception: {e}", file=sys.stderr)
            self._release()
            return Verdict.CONTINUE

        if outcome.timed_out:
            print("[SYSREG] timeout")
        return outcome.verdict

    def _monitor(self, stage: Stage) -> MonitorOutcome:
        try:
            stream = self.machine.open_console()
        except (OSError, pexpect.ExceptionPexpect) as e:
            print(f"[SYSREG] Could not connect to the debug port: {e}", file=sys.stderr)
            return MonitorOutcome(Verdict.CONTINUE)

        monitor = StreamMonitor(
            stream,
            self.machine.keyboard(),
            stage.checkpoint,
            watchdog_timeout=self.settings.timeout,
            duplicate_line_limit=self.settings.max_cache_hits,
            transcript=self.settings.log_path,
        )
        session = MonitorSession(monitor)
        session.start()
        return session.wait()

    def _shutdown(self) -> None:
        """Power off the machine if it is still running, then drop the session."""
        if self.machine.state() is not VmState.OFFLINE:
            try:
                self.machine.power_off()
            except Exception as e:
                if self.machine.state() is not VmState.OFFLINE:
                    raise PowerOffError(str(e)) from e
                print(f"[SYSREG] Failed to shutdown VM: {e}", file=sys.stderr)
        self._release()

    def _release(self) -> None:
        try:
            self.machine.release()
        except Exception as e:
            print(f"[SYSREG] Error releasing the VM session: {e}", file=sys.stderr)
