"""Exception hierarchy shared by the agent services."""

from __future__ import annotations

from typing import Any, Mapping


class ForgeError(RuntimeError):
    """Base error raised by agent services."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PlanParseError(ForgeError):
    """Raised when a planner response cannot be turned into a plan."""


class StepExecutionError(ForgeError):
    """Raised by a step handler when the step cannot be completed."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.retryable = retryable


class BudgetExceeded(ForgeError):
    """Raised when the session token ceiling has been reached."""


class PathEscapeError(ForgeError):
    """Raised when a path resolves outside of the project root."""


class CommandNotAllowed(ForgeError):
    """Raised when a shell command is outside the allowlist."""


class RateLimitExceeded(ForgeError):
    """Raised when a rate-limited endpoint has no capacity left in its window."""


class PatchError(ForgeError):
    """Raised when an edit cannot be applied to a file."""


__all__ = [
    "BudgetExceeded",
    "CommandNotAllowed",
    "ForgeError",
    "PatchError",
    "PathEscapeError",
    "PlanParseError",
    "RateLimitExceeded",
    "StepExecutionError",
]
