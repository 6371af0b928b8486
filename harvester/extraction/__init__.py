"""
Extraction layer: drives a browser page through a source workflow.

This package provides:
- WorkflowInterpreter: executes navigate / wait / click / scroll / extract
- TransformRegistry: named pure value transforms (trim, url, date, ...)
- dates: listing date and time parsing helpers
"""

from .interpreter import (
    ActionResult,
    ExtractionResult,
    InterpreterOptions,
    WorkflowInterpreter,
)
from .transforms import TransformContext, TransformRegistry, default_registry

__all__ = [
    "ActionResult",
    "ExtractionResult",
    "InterpreterOptions",
    "TransformContext",
    "TransformRegistry",
    "WorkflowInterpreter",
    "default_registry",
]
