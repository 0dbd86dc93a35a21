from .report import build_annotations, build_check_output, derive_conclusion
from .rules import RuleEngine
from .workflow import WorkflowGraph, WorkflowValidationError, format_parse_error, parse_workflow

__all__ = [
    "RuleEngine",
    "WorkflowGraph",
    "WorkflowValidationError",
    "build_annotations",
    "build_check_output",
    "derive_conclusion",
    "format_parse_error",
    "parse_workflow",
]
