"""
Error taxonomy for the alignment pipeline.

Fatal errors (ExtractionFailure, MergeParseFailure, ConservationViolation)
abort a run. GraphWriteFailure and SessionUpdateFailure are collected or
logged and never stop the pipeline on their own.
"""

from typing import Optional


class AuditError(Exception):
    """Base for every pipeline error."""


class ParseFailure(AuditError):
    """Model output could not be turned into the expected JSON shape."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class ExtractionFailure(AuditError):
    """Concept extraction failed for one dataset side."""

    def __init__(self, dataset: str, message: str):
        super().__init__(f"{dataset.upper()} concept extraction failed: {message}")
        self.dataset = dataset


class MergeParseFailure(AuditError):
    """The merge stage could not parse the model's merge instructions."""


class ConservationViolation(AuditError):
    """A merge pass changed the total element-id count."""

    def __init__(self, expected_d1: int, actual_d1: int, expected_d2: int, actual_d2: int, round: Optional[int] = None):
        where = f"round {round}: " if round is not None else ""
        super().__init__(
            f"{where}element count changed during merge "
            f"(D1 {expected_d1} -> {actual_d1}, D2 {expected_d2} -> {actual_d2})"
        )
        self.expected_d1 = expected_d1
        self.actual_d1 = actual_d1
        self.expected_d2 = expected_d2
        self.actual_d2 = actual_d2
        self.round = round


class GraphWriteFailure(AuditError):
    """A single node or edge write was rejected by the store."""


class SessionUpdateFailure(AuditError):
    """The session status could not be persisted."""


class PipelineAborted(AuditError):
    """The caller requested cancellation; raised at a stage boundary."""

    def __init__(self, message: str = "Aborted"):
        super().__init__(message)


class ToolError(AuditError):
    """An agent tool call was malformed or referenced unknown data."""
