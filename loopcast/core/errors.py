"""Error taxonomy shared by every loopcast component.

Each error carries the process exit status used when it reaches the top
level unhandled. Codes follow ``sysexits.h`` where a matching entry exists.
"""

from __future__ import annotations

from typing import Iterable, Optional


class LoopcastError(Exception):
    """Base class for all expected, reportable failures."""

    exit_code = 1


class ConfigError(LoopcastError):
    exit_code = 78  # EX_CONFIG


class InvalidParameter(LoopcastError):
    exit_code = 64  # EX_USAGE


class DeviceNotFound(LoopcastError):
    exit_code = 66  # EX_NOINPUT


class NoDeviceAvailable(LoopcastError):
    exit_code = 69  # EX_UNAVAILABLE


class AllocationError(LoopcastError):
    exit_code = 71  # EX_OSERR


class MissingDependency(LoopcastError):
    exit_code = 69  # EX_UNAVAILABLE

    def __init__(self, tools: Iterable[str], message: Optional[str] = None):
        self.tools = tuple(tools)
        super().__init__(message or f"Required dependency not found: {', '.join(self.tools)}")


class ResourceExhausted(LoopcastError):
    exit_code = 75  # EX_TEMPFAIL


class FailedToStart(LoopcastError):
    """The process was not alive at the end of its start window."""

    exit_code = 70  # EX_SOFTWARE


class SessionRuntimeError(LoopcastError):
    """The process is alive but reported an error on its error stream."""

    exit_code = 70


class ShutdownInProgress(LoopcastError):
    """Work was refused because process-wide cleanup has started."""

    exit_code = 75


class SetupError(LoopcastError):
    """A phone environment failed at ``step``; ``cause`` is the original error."""

    def __init__(self, profile: str, step: str, cause: BaseException):
        self.profile = profile
        self.step = step
        self.cause = cause
        super().__init__(f"Setup of {profile} failed at step '{step}': {cause}")

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return getattr(self.cause, "exit_code", 1)


__all__ = [
    "LoopcastError",
    "ConfigError",
    "InvalidParameter",
    "DeviceNotFound",
    "NoDeviceAvailable",
    "AllocationError",
    "MissingDependency",
    "ResourceExhausted",
    "FailedToStart",
    "SessionRuntimeError",
    "ShutdownInProgress",
    "SetupError",
]
