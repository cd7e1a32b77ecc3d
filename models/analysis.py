"""
Analysis models - tesseract cells and the final Venn classification.
"""

from enum import Enum
from typing import Optional
from pydantic import Field, field_validator

from .base import WireModel


class Criticality(str, Enum):
    """Severity of an alignment finding."""
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return {"critical": 3, "major": 2, "minor": 1, "info": 0}[self.value]

    @classmethod
    def coerce(cls, value) -> "Criticality":
        """Unknown or missing values become INFO."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.INFO


class TesseractCell(WireModel):
    """
    One (element, step) score in the alignment matrix.

    Polarity runs from -1 (gap/violation) to +1 (fully covered).
    """
    element_id: str = Field(alias="elementId")
    element_label: str = Field(default="", alias="elementLabel")
    step: int = Field(ge=1)
    step_label: str = Field(default="", alias="stepLabel")
    polarity: float = Field(ge=-1.0, le=1.0)
    criticality: Criticality = Criticality.INFO
    evidence_summary: str = Field(default="", alias="evidenceSummary")

    @field_validator("criticality", mode="before")
    @classmethod
    def _coerce_criticality(cls, value):
        return Criticality.coerce(value)


class ClassifiedElement(WireModel):
    """An element placed in one of the three Venn buckets."""
    id: str
    label: str = ""
    criticality: Criticality = Criticality.INFO
    evidence: str = ""
    # Only set for aligned elements
    source_element: Optional[str] = Field(default=None, alias="sourceElement")
    target_element: Optional[str] = Field(default=None, alias="targetElement")

    @field_validator("criticality", mode="before")
    @classmethod
    def _coerce_criticality(cls, value):
        return Criticality.coerce(value)


class VennSummary(WireModel):
    """Aggregate coverage, as percentages 0-100."""
    total_d1_coverage: float = Field(default=0.0, ge=0.0, le=100.0, alias="totalD1Coverage")
    total_d2_coverage: float = Field(default=0.0, ge=0.0, le=100.0, alias="totalD2Coverage")
    alignment_score: float = Field(default=0.0, ge=0.0, le=100.0, alias="alignmentScore")


class VennResult(WireModel):
    """Terminal artifact of a pipeline run."""
    unique_to_d1: list[ClassifiedElement] = Field(default_factory=list, alias="uniqueToD1")
    aligned: list[ClassifiedElement] = Field(default_factory=list)
    unique_to_d2: list[ClassifiedElement] = Field(default_factory=list, alias="uniqueToD2")
    summary: VennSummary = Field(default_factory=VennSummary)

    def to_dict(self) -> dict:
        """camelCase export for API responses."""
        return self.model_dump(mode="json", by_alias=True)
