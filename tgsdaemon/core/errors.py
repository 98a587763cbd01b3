"""Exception hierarchy for the typegen daemon session.

One exception per failure kind. Callers that only care whether a request
failed catch ``DaemonError``; the session uses the concrete kinds to decide
which pending callers are affected.
"""

from typing import Optional


class DaemonError(Exception):
    """Base exception for all daemon session errors."""


class SpawnFailed(DaemonError):
    """The worker process could not be started by the OS."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn '{command}': {reason}")


class ExecutableNotFound(SpawnFailed):
    """The worker executable does not exist or is not on PATH."""

    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(
            executable,
            "command not found. Please ensure Typegen is installed and "
            "in your system's PATH.",
        )


class StartupTimeout(DaemonError):
    """The worker did not send its ready signal within the deadline."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Daemon startup timeout - daemon did not respond within "
            f"{timeout_seconds:g} seconds"
        )


class ProcessExited(DaemonError):
    """The worker process terminated, expectedly or not."""

    def __init__(self, returncode: Optional[int], detail: str = ""):
        self.returncode = returncode
        message = f"Daemon process closed (code: {returncode})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class WriteFailed(DaemonError):
    """A request could not be written to the worker's stdin."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to send request for {key}: {reason}")


class Superseded(DaemonError):
    """A newer request for the session replaced this one."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Request for {key} cancelled - superseded by newer request")


class Disposed(DaemonError):
    """The session was torn down while the request was pending."""

    def __init__(self) -> None:
        super().__init__("Typegen daemon disposed.")


class MalformedResponse(DaemonError):
    """A record from the worker could not be decoded.

    Never surfaced to callers: without a correlation id the record cannot
    be attributed to any request, so the session logs it and moves on.
    """

    def __init__(self, record: str, reason: str):
        self.record = record
        self.reason = reason
        super().__init__(f"Error parsing daemon response: {reason}")
