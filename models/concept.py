"""
Concept models - named groupings of elements, and the per-stage results
that carry them between extraction and merge.
"""

from typing import Optional
from pydantic import Field

from .base import WireModel
from .element import Dataset


class ExtractedConcept(WireModel):
    """A concept as proposed by the extractor for a single dataset."""
    label: str
    description: str = ""
    element_ids: list[str] = Field(default_factory=list, alias="elementIds")


class Concept(WireModel):
    """
    A concept spanning one or both datasets.

    Within one pipeline generation, id sets are disjoint across concepts.
    """
    label: str
    description: str = ""
    d1_ids: list[str] = Field(default_factory=list, alias="d1Ids")
    d2_ids: list[str] = Field(default_factory=list, alias="d2Ids")
    element_labels: list[str] = Field(default_factory=list, alias="elementLabels")

    @classmethod
    def from_extracted(
        cls,
        extracted: ExtractedConcept,
        dataset: Dataset,
        element_labels: Optional[list[str]] = None,
    ) -> "Concept":
        """Lift a single-dataset concept into the unified form used for merging."""
        ids = list(extracted.element_ids)
        return cls(
            label=extracted.label,
            description=extracted.description,
            d1_ids=ids if dataset is Dataset.D1 else [],
            d2_ids=ids if dataset is Dataset.D2 else [],
            element_labels=element_labels or [],
        )

    @property
    def key(self) -> str:
        """Case-insensitive identity used during merge reconciliation."""
        return self.label.lower()

    @property
    def element_count(self) -> int:
        return len(self.d1_ids) + len(self.d2_ids)

    @property
    def is_cross_dataset(self) -> bool:
        return bool(self.d1_ids) and bool(self.d2_ids)

    @property
    def is_d1_only(self) -> bool:
        return bool(self.d1_ids) and not self.d2_ids

    @property
    def is_d2_only(self) -> bool:
        return bool(self.d2_ids) and not self.d1_ids

    def ids_for(self, dataset: Dataset) -> list[str]:
        return self.d1_ids if dataset is Dataset.D1 else self.d2_ids

    def source_annotation(self) -> str:
        """Compact source-count tag shown to the model during merge."""
        d1_count = len(self.d1_ids)
        d2_count = len(self.d2_ids)
        if d1_count and d2_count:
            return f"[BOTH: {d1_count} D1 + {d2_count} D2]"
        if d1_count:
            return f"[D1-only: {d1_count} elements]"
        return f"[D2-only: {d2_count} elements]"


class MergeLogEntry(WireModel):
    """Audit record of which source concepts were fused. Display only."""
    from_labels: list[str] = Field(default_factory=list, alias="from")
    to: str

    def summary(self) -> str:
        return f"{self.to} <- [{', '.join(self.from_labels)}]"


class MergeProposal(WireModel):
    """One merge group as proposed by the model."""
    source_concepts: list[str] = Field(default_factory=list, alias="sourceConcepts")
    merged_label: str = Field(alias="mergedLabel")
    merged_description: str = Field(default="", alias="mergedDescription")


class ExtractionResult(WireModel):
    """Extractor output for one dataset."""
    dataset: Dataset
    concepts: list[ExtractedConcept] = Field(default_factory=list)
    element_count: int = 0

    def covered_ids(self) -> set[str]:
        covered = set()
        for concept in self.concepts:
            covered.update(concept.element_ids)
        return covered

    def to_concepts(self, labels_by_id: Optional[dict[str, str]] = None) -> list[Concept]:
        """Unified concepts, with element label previews when labels are known."""
        labels_by_id = labels_by_id or {}
        return [
            Concept.from_extracted(
                c,
                self.dataset,
                element_labels=[labels_by_id[i] for i in c.element_ids if i in labels_by_id],
            )
            for c in self.concepts
        ]


class MergeResult(WireModel):
    """
    Complete concept list after one or more merge passes.

    `concepts` is the single source of truth; the merged / unmerged views
    are derived from which side contributed ids.
    """
    round: int = 1
    concepts: list[Concept] = Field(default_factory=list)
    merge_log: list[MergeLogEntry] = Field(default_factory=list, alias="mergeLog")
    input_count: int = Field(default=0, alias="inputCount")
    output_count: int = Field(default=0, alias="outputCount")
    d1_element_count: int = Field(default=0, alias="d1ElementCount")
    d2_element_count: int = Field(default=0, alias="d2ElementCount")

    @property
    def merged_concepts(self) -> list[Concept]:
        """Concepts carrying ids from both datasets."""
        return [c for c in self.concepts if c.is_cross_dataset]

    @property
    def unmerged_d1_concepts(self) -> list[Concept]:
        """D1-only concepts: gaps."""
        return [c for c in self.concepts if c.is_d1_only]

    @property
    def unmerged_d2_concepts(self) -> list[Concept]:
        """D2-only concepts: orphans."""
        return [c for c in self.concepts if c.is_d2_only]
