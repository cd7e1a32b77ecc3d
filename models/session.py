"""
Audit session - status, pipeline phase, progress events and audit trail.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

from .base import BaseEntity


class SessionStatus(str, Enum):
    """Persisted status of an audit session."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.COMPLETED,
            SessionStatus.COMPLETED_WITH_WARNINGS,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        )


class PipelinePhase(str, Enum):
    """States of the pipeline state machine, in order."""
    IDLE = "idle"
    CREATING_NODES = "creating_nodes"
    EXTRACTING = "extracting"
    MERGING_CONCEPTS = "merging_concepts"
    BUILDING_GRAPH = "building_graph"
    BUILDING_TESSERACT = "building_tesseract"
    GENERATING_VENN = "generating_venn"
    COMPLETED = "completed"
    ERROR = "error"


# Progress percentage reported on entering each phase
PHASE_PROGRESS = {
    PipelinePhase.IDLE: 0,
    PipelinePhase.CREATING_NODES: 5,
    PipelinePhase.EXTRACTING: 15,
    PipelinePhase.MERGING_CONCEPTS: 35,
    PipelinePhase.BUILDING_GRAPH: 50,
    PipelinePhase.BUILDING_TESSERACT: 65,
    PipelinePhase.GENERATING_VENN: 85,
    PipelinePhase.COMPLETED: 100,
    PipelinePhase.ERROR: 0,
}


class AuditSession(BaseEntity):
    """One audit run's persisted state."""
    id: str
    project_id: str = ""
    share_token: Optional[str] = None  # When set, every store call must present it
    status: SessionStatus = SessionStatus.PENDING
    phase: Optional[str] = None
    error: Optional[str] = None


_COUNT_KEYS = {
    "d1_concept_count": "d1ConceptCount",
    "d2_concept_count": "d2ConceptCount",
    "merged_count": "mergedCount",
    "tesseract_current": "tesseractCurrent",
    "tesseract_total": "tesseractTotal",
}


class ProgressEvent(BaseModel):
    """
    One entry of the progress stream.

    Serialized as {phase, message, progress, ...counts} with camelCase
    count keys; counts that were not reported are omitted.
    """
    phase: PipelinePhase
    message: str
    progress: int = Field(ge=0, le=100)
    d1_concept_count: Optional[int] = None
    d2_concept_count: Optional[int] = None
    merged_count: Optional[int] = None
    tesseract_current: Optional[int] = None
    tesseract_total: Optional[int] = None
    payload: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        data = {
            "phase": self.phase.value,
            "message": self.message,
            "progress": self.progress,
        }
        for field_name, key in _COUNT_KEYS.items():
            value = getattr(self, field_name)
            if value is not None:
                data[key] = value
        if self.payload is not None:
            data["result"] = self.payload
        return data


class BlackboardEntry(BaseModel):
    """A reasoning note left by a pipeline stage or an agent."""
    session_id: str
    agent_role: str
    entry_type: str  # plan, finding, observation, question, conclusion, tool_result, <dataset>_concepts
    content: str
    iteration: int = 1
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    evidence: Optional[dict[str, Any]] = None
    target_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ActivityEntry(BaseModel):
    """A user-facing activity-stream record."""
    session_id: str
    agent_role: str
    activity_type: str
    title: str
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
