from __future__ import annotations

from collections.abc import Sequence


class RivetError(RuntimeError):
    pass


class ConfigError(RivetError, ValueError):
    pass


class FilesystemError(RivetError):
    pass


class NotInitializedError(RivetError):
    pass


class CancellationError(RivetError):
    pass


class ExternalCommandError(RivetError):
    """A command exited non-zero or could not be run at all.

    ``exit_code`` is the process exit status, or -1 when the process never
    started. ``stderr`` is kept verbatim so callers can log it.
    """

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str],
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = tuple(argv)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ProcessStartError(ExternalCommandError):
    pass


class ScaleDownError(ExternalCommandError):
    """Scaling back to the baseline failed; the service may be left over-scaled."""
