"""
Error taxonomy for Stardeck engine operations.

Every Engine Adapter call, workflow step and router maps failures onto one
of these categories. PartialFailure is not an exception: non-fatal problems
are carried as warnings on successful results.
"""

from typing import Optional


class StardeckError(Exception):
    """Base exception for all engine orchestration errors."""

    category = "internal"

    def __init__(self, message: str, detail: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.step = step

    def __str__(self) -> str:
        if self.detail and self.detail not in self.message:
            return f"{self.message}: {self.detail}"
        return self.message


class NotFoundError(StardeckError):
    """Container, image, volume, network, stack or backup does not exist."""

    category = "not_found"


class ConflictError(StardeckError):
    """Name or port already in use, or the resource is busy with another operation."""

    category = "conflict"


class EngineTimeoutError(StardeckError):
    """Engine call or external tool exceeded its time budget."""

    category = "timeout"


class EngineUnavailableError(StardeckError):
    """Container engine socket is unreachable."""

    category = "engine_unavailable"


class ValidationFailedError(StardeckError):
    """Request parameters or a compose document failed validation."""

    category = "validation"


class EngineError(StardeckError):
    """Any other engine failure. ``detail`` carries the engine's error text verbatim."""

    category = "engine"


class StackCommandError(EngineError):
    """Compose tool exited with a non-zero status."""

    def __init__(self, message: str, exit_code: int, output: str = "", step: Optional[str] = None):
        super().__init__(message, detail=output or None, step=step)
        self.exit_code = exit_code
        self.output = output
