from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from rivet.errors import CancellationError, ExternalCommandError, ProcessStartError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    cwd: Path | None
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """Run external commands, capturing output and honouring a cancel event.

    The runner keeps no per-call state, so one instance can be shared by every
    repository monitor thread. A command that exits before cancellation is
    noticed returns its result normally; callers check the event between steps.
    """

    def __init__(
        self,
        *,
        poll_interval_seconds: float = 0.2,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds must be > 0, got {poll_interval_seconds}")
        self.poll_interval_seconds = poll_interval_seconds
        self.terminate_grace_seconds = terminate_grace_seconds

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        cancel: threading.Event | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = tuple(argv)
        if not argv:
            raise ValueError("argv must not be empty")
        command = shlex.join(argv)

        if cancel is not None and cancel.is_set():
            raise CancellationError(f"{command}: cancelled before start")

        logger.debug("Running %s (cwd=%s)", command, cwd or ".")
        try:
            proc = subprocess.Popen(
                list(argv),
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ProcessStartError(
                f"failed to start {command}: {e}",
                argv=argv,
                exit_code=-1,
            ) from e

        stdout, stderr = self._communicate(proc, command=command, cancel=cancel)

        result = CommandResult(
            argv=argv,
            cwd=cwd,
            exit_code=int(proc.returncode),
            stdout=stdout or "",
            stderr=stderr or "",
        )
        if check and not result.ok:
            details = result.stderr.strip() or result.stdout.strip() or "<no output>"
            raise ExternalCommandError(
                f"{command} failed (exit={result.exit_code}): {details}",
                argv=argv,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def _communicate(
        self,
        proc: subprocess.Popen[str],
        *,
        command: str,
        cancel: threading.Event | None,
    ) -> tuple[str, str]:
        if cancel is None:
            return proc.communicate()

        while True:
            try:
                return proc.communicate(timeout=self.poll_interval_seconds)
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    self._terminate(proc, command=command)
                    raise CancellationError(f"{command}: cancelled while running") from None

    def _terminate(self, proc: subprocess.Popen[str], *, command: str) -> None:
        logger.warning("Terminating %s (pid=%s) after cancellation", command, proc.pid)
        proc.terminate()
        try:
            proc.communicate(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Killing %s (pid=%s); it ignored SIGTERM", command, proc.pid)
            proc.kill()
            proc.communicate()
