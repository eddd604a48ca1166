"""
Progress event variants.

Workflows emit these typed events; they are turned into JSON only at the
transport boundary by ``to_message()``:

    StepEvent      -> {step, message, error, progress?, ...extra}
    OutputEvent    -> {step, message, error: false, output: true}
    CompleteEvent  -> {complete: true, success, error?, warnings, ...result}
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class StepEvent:
    """A workflow step started, progressed, finished or failed."""
    step: str
    message: str
    error: bool = False
    progress: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    droppable = False

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "step": self.step,
            "message": self.message,
            "error": self.error,
        }
        if self.progress is not None:
            message["progress"] = max(0, min(100, int(self.progress)))
        message.update(self.extra)
        return message


@dataclass(frozen=True)
class OutputEvent:
    """One line of raw tool output (compose, pull, backup) within a step."""
    step: str
    line: str

    # Output lines are the first thing discarded when the consumer lags
    droppable = True

    def to_message(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "message": self.line,
            "error": False,
            "output": True,
        }


@dataclass(frozen=True)
class CompleteEvent:
    """Terminal event. Exactly one per workflow."""
    success: bool
    message: str = ""
    error: Optional[str] = None
    step: Optional[str] = None  # Step that failed
    warnings: List[str] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)

    droppable = False

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "complete": True,
            "success": self.success,
            "step": "complete" if self.success else (self.step or "complete"),
            "message": self.message or (self.error if not self.success else "Completed"),
        }
        if not self.success:
            message["error"] = self.error or "Operation failed"
        message["warnings"] = list(self.warnings)
        message.update(self.result)
        return message


ProgressEvent = Union[StepEvent, OutputEvent, CompleteEvent]
