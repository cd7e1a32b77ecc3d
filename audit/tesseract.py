"""
Alignment scoring (the tesseract) - per-element, per-step evaluation.

For each merged concept, the model scores every D1 element against the
D2 elements sharing the concept, once per analysis step. D1 elements of
gap concepts have nothing to be scored against and get a fixed failing
coverage cell instead.

The scorer is optional: a failed concept is logged and skipped, and the
Venn finalizer copes with missing cells.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from models import (
    Concept,
    Criticality,
    Element,
    MergeResult,
    PipelinePhase,
    ProgressEvent,
    TesseractCell,
)
from repositories import Repository

from .context import RunContext
from .errors import ParseFailure
from .llm import TextCompleter, parse_json_object

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisStep:
    number: int
    label: str
    question: str


DEFAULT_STEPS: tuple[AnalysisStep, ...] = (
    AnalysisStep(1, "coverage", "Is the requirement addressed by the implementation at all?"),
    AnalysisStep(2, "correctness", "Does the implementation do what the requirement says?"),
    AnalysisStep(3, "quality", "Is the implementation complete, maintainable and tested?"),
    AnalysisStep(4, "risk", "What could go wrong if the implementation ships as is?"),
    AnalysisStep(5, "compliance", "Does it meet the stated constraints and standards?"),
)

SCORING_PROMPT = """You are auditing how well an implementation covers its requirements.

## Concept: {label}
{description}

## Requirements (Dataset 1)
{d1_text}

## Implementation (Dataset 2)
{d2_text}

## Analysis Steps
{steps_text}

## Task
For EVERY requirement above and EVERY analysis step, score the alignment:
- polarity: -1 (gap/violation) to +1 (fully covered)
- criticality: critical, major, minor or info
- evidenceSummary: one or two sentences citing the implementation items

## Required JSON Output
{{
  "cells": [
    {{
      "elementId": "requirement id",
      "step": 1,
      "polarity": 0.8,
      "criticality": "info",
      "evidenceSummary": "Covered by ..."
    }}
  ]
}}

Return ONLY valid JSON, no markdown or extra text."""


def _format_side(ids: list[str], elements_by_id: dict[str, Element], content_limit: int) -> str:
    lines = []
    for element_id in ids:
        element = elements_by_id.get(element_id)
        if element is None:
            lines.append(f"- ID: {element_id}")
            continue
        lines.append(f"- ID: {element.id}\n  Label: {element.label}\n  Content: {element.truncated_content(content_limit)}")
    return "\n".join(lines) or "(none)"


def build_scoring_prompt(
    concept: Concept,
    elements_by_id: dict[str, Element],
    steps: tuple[AnalysisStep, ...] = DEFAULT_STEPS,
    content_limit: int = 300,
) -> str:
    return SCORING_PROMPT.format(
        label=concept.label,
        description=concept.description,
        d1_text=_format_side(concept.d1_ids, elements_by_id, content_limit),
        d2_text=_format_side(concept.d2_ids, elements_by_id, content_limit),
        steps_text="\n".join(f"{s.number}. {s.label}: {s.question}" for s in steps),
    )


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


def parse_cells(
    raw_text: str,
    concept: Concept,
    labels_by_id: dict[str, str],
    steps: tuple[AnalysisStep, ...] = DEFAULT_STEPS,
) -> list[TesseractCell]:
    """
    Model output -> cells for this concept's D1 elements.

    Cells naming other elements or unknown steps are dropped, polarity is
    clamped into [-1, 1], and a repeated (element, step) keeps the last
    value. Raises ParseFailure when there is no 'cells' list.
    """
    parsed = parse_json_object(raw_text, context="tesseract")
    raw_cells = parsed.get("cells")
    if not isinstance(raw_cells, list):
        raise ParseFailure("[tesseract] response has no 'cells' list", raw_text)

    step_labels = {s.number: s.label for s in steps}
    members = set(concept.d1_ids)
    cells: dict[tuple[str, int], TesseractCell] = {}

    for raw in raw_cells:
        if not isinstance(raw, dict):
            continue
        element_id = str(raw.get("elementId", "")).strip()
        if element_id not in members:
            logger.info("[tesseract] Dropping cell for %r outside %r", element_id, concept.label)
            continue
        try:
            step = int(raw.get("step"))
            polarity = _clamp(float(raw.get("polarity")))
        except (TypeError, ValueError):
            logger.warning("[tesseract] Malformed cell for %s: %s", element_id, raw)
            continue
        if step not in step_labels:
            continue
        try:
            cell = TesseractCell(
                element_id=element_id,
                element_label=labels_by_id.get(element_id, ""),
                step=step,
                step_label=step_labels[step],
                polarity=polarity,
                criticality=raw.get("criticality"),
                evidence_summary=str(raw.get("evidenceSummary") or ""),
            )
        except ValidationError as e:
            logger.warning("[tesseract] Invalid cell for %s: %s", element_id, e)
            continue
        cells[(element_id, step)] = cell

    return list(cells.values())


def gap_cells(concept: Concept, labels_by_id: dict[str, str]) -> list[TesseractCell]:
    """Failing coverage cells for the D1 elements of a gap concept."""
    coverage = DEFAULT_STEPS[0]
    return [
        TesseractCell(
            element_id=element_id,
            element_label=labels_by_id.get(element_id, ""),
            step=coverage.number,
            step_label=coverage.label,
            polarity=-1.0,
            criticality=Criticality.CRITICAL,
            evidence_summary=f"No implementation found for concept '{concept.label}'",
        )
        for element_id in concept.d1_ids
    ]


class AlignmentScorer:
    """
    Fills the tesseract for a merge result.

    Usage:
        scorer = AlignmentScorer(completer, repo)
        cells = await scorer.score(ctx, merge_result, d1_elements, d2_elements)
    """

    def __init__(
        self,
        completer: TextCompleter,
        repo: Optional[Repository] = None,
        max_tokens: int = 8192,
        content_limit: int = 300,
        steps: tuple[AnalysisStep, ...] = DEFAULT_STEPS,
    ):
        self.completer = completer
        self.repo = repo
        self.max_tokens = max_tokens
        self.content_limit = content_limit
        self.steps = steps

    async def score(
        self,
        ctx: RunContext,
        merge_result: MergeResult,
        d1_elements: list[Element],
        d2_elements: list[Element],
        progress_range: Optional[tuple[int, int]] = None,
    ) -> list[TesseractCell]:
        elements_by_id = {e.id: e for e in d2_elements}
        elements_by_id.update({e.id: e for e in d1_elements})
        labels_by_id = {e.id: e.label for e in d1_elements}

        merged = merge_result.merged_concepts
        total = len(merged)
        cells: list[TesseractCell] = []
        logger.info("[tesseract] Scoring %d merged concepts", total)

        for index, concept in enumerate(merged, 1):
            ctx.check_abort()
            if progress_range:
                low, high = progress_range
                ctx.report(ProgressEvent(
                    phase=PipelinePhase.BUILDING_TESSERACT,
                    message=f"Analyzing {concept.label} ({index}/{total})...",
                    progress=low + (high - low) * (index - 1) // max(total, 1),
                    tesseract_current=index,
                    tesseract_total=total,
                ))
            try:
                concept_cells = await self._score_concept(concept, elements_by_id, labels_by_id)
            except Exception as e:
                logger.error("[tesseract] Scoring failed for %r: %s", concept.label, e)
                continue
            logger.info("[tesseract] %s: %d cells", concept.label, len(concept_cells))
            cells.extend(concept_cells)

        for concept in merge_result.unmerged_d1_concepts:
            cells.extend(gap_cells(concept, labels_by_id))

        self._save(ctx, cells)
        logger.info("[tesseract] %d cells total", len(cells))
        return cells

    async def _score_concept(
        self,
        concept: Concept,
        elements_by_id: dict[str, Element],
        labels_by_id: dict[str, str],
    ) -> list[TesseractCell]:
        prompt = build_scoring_prompt(concept, elements_by_id, self.steps, self.content_limit)
        raw_text = await self.completer.complete(prompt, self.max_tokens)
        return parse_cells(raw_text, concept, labels_by_id, self.steps)

    def _save(self, ctx: RunContext, cells: list[TesseractCell]) -> None:
        if self.repo is None:
            return
        for cell in cells:
            try:
                self.repo.trail.save_tesseract_cell(ctx.session_id, ctx.token, cell)
            except Exception as e:
                logger.error("[tesseract] Failed to save cell %s/%d: %s", cell.element_id, cell.step, e)
