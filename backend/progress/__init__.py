"""
Progress reporting for streaming workflows.
"""

from .events import CompleteEvent, OutputEvent, ProgressEvent, StepEvent
from .reporter import ProgressReporter

__all__ = ['CompleteEvent', 'OutputEvent', 'ProgressEvent', 'StepEvent', 'ProgressReporter']
