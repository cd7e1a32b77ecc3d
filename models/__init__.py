"""
Domain models - single source of truth for all audit entities.

Design principles:
- Every entity defined once
- Validation at the boundary (LLM output, HTTP payloads)
- Backend-agnostic (repository handles persistence)
"""

from .base import BaseEntity, TimestampMixin, WireModel
from .element import Dataset, Element
from .concept import (
    Concept,
    ExtractedConcept,
    ExtractionResult,
    MergeLogEntry,
    MergeProposal,
    MergeResult,
)
from .graph import (
    EdgeType,
    GraphEdge,
    GraphNode,
    GraphWriteError,
    GraphWriteReport,
    NodeType,
    SourceDataset,
)
from .analysis import ClassifiedElement, Criticality, TesseractCell, VennResult, VennSummary
from .session import (
    PHASE_PROGRESS,
    ActivityEntry,
    AuditSession,
    BlackboardEntry,
    PipelinePhase,
    ProgressEvent,
    SessionStatus,
)

__all__ = [
    # Base
    "BaseEntity",
    "TimestampMixin",
    "WireModel",
    # Elements
    "Dataset",
    "Element",
    # Concepts
    "Concept",
    "ExtractedConcept",
    "ExtractionResult",
    "MergeLogEntry",
    "MergeProposal",
    "MergeResult",
    # Graph
    "EdgeType",
    "GraphEdge",
    "GraphNode",
    "GraphWriteError",
    "GraphWriteReport",
    "NodeType",
    "SourceDataset",
    # Analysis
    "ClassifiedElement",
    "Criticality",
    "TesseractCell",
    "VennResult",
    "VennSummary",
    # Session
    "PHASE_PROGRESS",
    "ActivityEntry",
    "AuditSession",
    "BlackboardEntry",
    "PipelinePhase",
    "ProgressEvent",
    "SessionStatus",
]
