"""
Commerce kernel domain layer.

Pure value objects and time abstractions shared by every module.  Nothing
in this package performs I/O except SystemClock.
"""

from commerce_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "Clock",
    "Deadline",
    "DeterministicClock",
    "Guard",
    "SystemClock",
    "Transition",
    "Workflow",
]
