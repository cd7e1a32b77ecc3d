"""
Venn finalization - classify every element as unique to D1, aligned, or
unique to D2, and summarize coverage.

Concept membership decides the bucket: an element is aligned exactly when
its owning concept carries ids from both datasets. Scorer cells only
inform criticality, evidence and the alignment score.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from models import (
    ClassifiedElement,
    Concept,
    Criticality,
    Element,
    MergeResult,
    TesseractCell,
    VennResult,
    VennSummary,
)
from repositories import Repository

from .context import RunContext
from .errors import ToolError

logger = logging.getLogger(__name__)


def most_severe(cells: list[TesseractCell]) -> Optional[TesseractCell]:
    """Highest criticality, ties broken by lowest polarity."""
    if not cells:
        return None
    return max(cells, key=lambda c: (c.criticality.rank, -c.polarity))


def coverage_percent(aligned: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(100.0 * aligned / total, 1)


def alignment_score(d1_coverage: float, d2_coverage: float, cells: list[TesseractCell]) -> float:
    """
    Mean coverage, blended 2:1 with mean polarity (rescaled to 0-100)
    when there are scorer cells.
    """
    base = (d1_coverage + d2_coverage) / 2
    if not cells:
        return round(base, 1)
    mean_polarity = sum(c.polarity for c in cells) / len(cells)
    polarity_score = (mean_polarity + 1.0) * 50.0
    return round((2 * base + polarity_score) / 3, 1)


class VennFinalizer:
    """
    Reduces a merge result (plus optional scorer cells) to a VennResult.

    Usage:
        finalizer = VennFinalizer(repo)
        venn = finalizer.finalize(merge_result, d1_elements, d2_elements, cells)
        finalizer.save(ctx, venn)
    """

    def __init__(self, repo: Optional[Repository] = None):
        self.repo = repo

    def finalize(
        self,
        merge_result: MergeResult,
        d1_elements: list[Element],
        d2_elements: list[Element],
        cells: Optional[list[TesseractCell]] = None,
    ) -> VennResult:
        cells = cells or []
        cells_by_element: dict[str, list[TesseractCell]] = {}
        for cell in cells:
            cells_by_element.setdefault(cell.element_id, []).append(cell)

        d1_owner: dict[str, Concept] = {}
        d2_owner: dict[str, Concept] = {}
        for concept in merge_result.concepts:
            for element_id in concept.d1_ids:
                d1_owner.setdefault(element_id, concept)
            for element_id in concept.d2_ids:
                d2_owner.setdefault(element_id, concept)

        result = VennResult()
        d1_aligned = 0
        d1_seen: set[str] = set()
        for element in d1_elements:
            if element.id in d1_seen:
                continue
            d1_seen.add(element.id)
            concept = d1_owner.get(element.id)
            classified = self._classify(element, concept, cells_by_element.get(element.id, []), is_d1=True)
            if concept is not None and concept.is_cross_dataset:
                result.aligned.append(classified)
                d1_aligned += 1
            else:
                result.unique_to_d1.append(classified)

        d2_seen: set[str] = set()
        for element in d2_elements:
            if element.id in d2_seen:
                continue
            d2_seen.add(element.id)
            concept = d2_owner.get(element.id)
            classified = self._classify(element, concept, cells_by_element.get(element.id, []), is_d1=False)
            if concept is not None and concept.is_cross_dataset:
                result.aligned.append(classified)
            else:
                result.unique_to_d2.append(classified)

        d2_aligned = len(result.aligned) - d1_aligned
        d1_coverage = coverage_percent(d1_aligned, len(d1_seen))
        d2_coverage = coverage_percent(d2_aligned, len(d2_seen))
        result.summary = VennSummary(
            total_d1_coverage=d1_coverage,
            total_d2_coverage=d2_coverage,
            alignment_score=alignment_score(d1_coverage, d2_coverage, cells),
        )

        logger.info(
            "[venn] %d unique D1, %d aligned, %d unique D2 (D1 %.1f%%, D2 %.1f%%, score %.1f)",
            len(result.unique_to_d1), len(result.aligned), len(result.unique_to_d2),
            d1_coverage, d2_coverage, result.summary.alignment_score,
        )
        return result

    def _classify(
        self,
        element: Element,
        concept: Optional[Concept],
        cells: list[TesseractCell],
        is_d1: bool,
    ) -> ClassifiedElement:
        if concept is None:
            criticality = Criticality.MAJOR if is_d1 else Criticality.MINOR
            evidence = "Not assigned to any concept"
        elif concept.is_cross_dataset:
            criticality = Criticality.INFO
            evidence = f"Shared concept: {concept.label}"
        elif is_d1:
            criticality = Criticality.MAJOR
            evidence = f"Gap: no implementation for '{concept.label}'"
        else:
            criticality = Criticality.MINOR
            evidence = f"Orphan: no requirement for '{concept.label}'"

        worst = most_severe(cells)
        if worst is not None:
            criticality = worst.criticality
            evidence = worst.evidence_summary or evidence

        classified = ClassifiedElement(
            id=element.id,
            label=element.label,
            criticality=criticality,
            evidence=evidence,
        )
        if concept is not None and concept.is_cross_dataset:
            if is_d1:
                classified.source_element = element.id
                classified.target_element = concept.d2_ids[0]
            else:
                classified.source_element = concept.d1_ids[0]
                classified.target_element = element.id
        return classified

    def finalize_manual(self, payload: dict) -> VennResult:
        """Validate an agent-supplied classification. Raises ToolError."""
        try:
            return VennResult.model_validate(payload)
        except ValidationError as e:
            raise ToolError(f"finalize_venn: invalid payload: {e}") from e

    def save(self, ctx: RunContext, result: VennResult) -> bool:
        """Persist the result. Best effort; returns False on failure."""
        if self.repo is None:
            return False
        try:
            self.repo.trail.save_venn_result(ctx.session_id, ctx.token, result)
            return True
        except Exception as e:
            logger.error("[venn] Failed to save result: %s", e)
            return False
