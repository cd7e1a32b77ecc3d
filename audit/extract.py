"""
Concept extraction - one dataset's elements -> a covering set of concepts.

Runs once per dataset. The two calls share no mutable state and are
awaited together by extract_both().
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from models import (
    ActivityEntry,
    BlackboardEntry,
    Dataset,
    Element,
    ExtractedConcept,
    ExtractionResult,
)
from repositories import Repository

from .context import RunContext
from .errors import ExtractionFailure, ParseFailure
from .llm import TextCompleter, parse_json_object

logger = logging.getLogger(__name__)

UNCATEGORIZED_LABEL = "Uncategorized"

EXTRACTION_PROMPT = """Extract common CONCEPTS from these {dataset_label} elements.

## Elements ({count} total)
These are {dataset_context}.

{elements_text}

## Task
Identify 5-15 high-level concepts that group these elements by theme/function.
Each element MUST be linked to at least one concept via its ID.

## Required JSON Output
{{
  "concepts": [
    {{
      "label": "Concept Name",
      "description": "2-3 sentence explanation of what this concept covers",
      "elementIds": ["id1", "id2"]
    }}
  ]
}}

CRITICAL:
- Every element ID must appear in at least one concept
- Return ONLY valid JSON, no markdown or extra text"""


def format_elements(elements: list[Element], content_limit: int) -> str:
    """Numbered element listing with content truncated to content_limit chars."""
    return "\n\n".join(
        f"[{i}] ID: {e.id}\n"
        f"Label: {e.label}\n"
        f"Category: {e.category or 'unknown'}\n"
        f"Content: {e.truncated_content(content_limit)}"
        for i, e in enumerate(elements, 1)
    )


def build_extraction_prompt(dataset: Dataset, elements: list[Element], content_limit: int = 300) -> str:
    return EXTRACTION_PROMPT.format(
        dataset_label=dataset.display_label,
        count=len(elements),
        dataset_context=dataset.context,
        elements_text=format_elements(elements, content_limit),
    )


def normalize_concepts(
    concepts: list[ExtractedConcept],
    valid_ids: list[str],
    dataset: Dataset,
) -> list[ExtractedConcept]:
    """
    Drop ids outside the dataset and make concepts disjoint.

    An id listed by several concepts stays with the first one. Concepts
    left without members are dropped.
    """
    valid = set(valid_ids)
    owned: set[str] = set()
    normalized = []

    for concept in concepts:
        member_ids = []
        for element_id in concept.element_ids:
            if element_id not in valid:
                logger.warning("[%s] Dropping unknown element id %r from %r", dataset.value, element_id, concept.label)
                continue
            if element_id in owned:
                continue
            owned.add(element_id)
            member_ids.append(element_id)

        if member_ids:
            normalized.append(concept.model_copy(update={"element_ids": member_ids}))
        else:
            logger.info("[%s] Dropping empty concept %r", dataset.value, concept.label)

    return normalized


class ConceptExtractor:
    """
    Turns a dataset's elements into concepts via a single model call.

    Usage:
        extractor = ConceptExtractor(completer, repo)
        result = await extractor.extract(ctx, Dataset.D1, d1_elements)
    """

    def __init__(
        self,
        completer: TextCompleter,
        repo: Optional[Repository] = None,
        max_tokens: int = 8192,
        content_limit: int = 300,
        coverage_policy: str = "fail",
    ):
        self.completer = completer
        self.repo = repo
        self.max_tokens = max_tokens
        self.content_limit = content_limit
        self.coverage_policy = coverage_policy

    async def extract(self, ctx: RunContext, dataset: Dataset, elements: list[Element]) -> ExtractionResult:
        """
        Extract concepts for one dataset.

        Raises ExtractionFailure on model errors, unparseable output, or an
        uncovered element (unless coverage_policy is 'assign_uncategorized').
        """
        tag = dataset.value
        if not elements:
            logger.info("[%s] No elements, skipping extraction", tag)
            return ExtractionResult(dataset=dataset, concepts=[], element_count=0)

        logger.info("[%s] Starting concept extraction for %d elements", tag, len(elements))
        prompt = build_extraction_prompt(dataset, elements, self.content_limit)

        try:
            raw_text = await self.completer.complete(prompt, self.max_tokens)
        except Exception as e:
            raise ExtractionFailure(tag, f"model call failed: {e}") from e

        logger.info("[%s] Got response, length: %d", tag, len(raw_text or ""))
        concepts = self._parse(tag, raw_text)

        element_ids = [e.id for e in elements]
        concepts = normalize_concepts(concepts, element_ids, dataset)
        concepts = self._enforce_coverage(dataset, concepts, element_ids)

        result = ExtractionResult(dataset=dataset, concepts=concepts, element_count=len(elements))
        logger.info("[%s] Extracted %d concepts", tag, len(concepts))
        self._record(ctx, dataset, result)
        return result

    def _parse(self, tag: str, raw_text: str) -> list[ExtractedConcept]:
        try:
            parsed = parse_json_object(raw_text, context=tag)
        except ParseFailure as e:
            logger.error("[%s] Raw text: %s", tag, (raw_text or "")[:1000])
            raise ExtractionFailure(tag, str(e)) from e

        raw_concepts = parsed.get("concepts")
        if not isinstance(raw_concepts, list):
            raise ExtractionFailure(tag, "response has no 'concepts' list")

        try:
            return [ExtractedConcept.model_validate(c) for c in raw_concepts]
        except ValidationError as e:
            raise ExtractionFailure(tag, f"malformed concept: {e}") from e

    def _enforce_coverage(
        self,
        dataset: Dataset,
        concepts: list[ExtractedConcept],
        element_ids: list[str],
    ) -> list[ExtractedConcept]:
        covered = set()
        for concept in concepts:
            covered.update(concept.element_ids)
        missing = [i for i in element_ids if i not in covered]
        if not missing:
            return concepts

        if self.coverage_policy != "assign_uncategorized":
            preview = ", ".join(missing[:5])
            raise ExtractionFailure(
                dataset.value,
                f"{len(missing)} element(s) not assigned to any concept: {preview}",
            )

        logger.warning("[%s] %d uncovered element(s) -> %s", dataset.value, len(missing), UNCATEGORIZED_LABEL)
        return concepts + [
            ExtractedConcept(
                label=UNCATEGORIZED_LABEL,
                description=f"{dataset.display_label} elements the model did not assign to a concept.",
                element_ids=missing,
            )
        ]

    def _record(self, ctx: RunContext, dataset: Dataset, result: ExtractionResult) -> None:
        """Blackboard + activity entries. Best effort."""
        if self.repo is None:
            return
        role = f"{dataset.value}_extractor"
        lines = "\n".join(f"- {c.label}: {len(c.element_ids)} elements" for c in result.concepts)
        try:
            self.repo.trail.append_blackboard(ctx.token, BlackboardEntry(
                session_id=ctx.session_id,
                agent_role=role,
                entry_type=f"{dataset.value}_concepts",
                content=f"Extracted {len(result.concepts)} concepts from {result.element_count} elements:\n{lines}",
                confidence=0.9,
            ))
            self.repo.trail.append_activity(ctx.token, ActivityEntry(
                session_id=ctx.session_id,
                agent_role=role,
                activity_type="concept_extraction",
                title=f"{dataset.display_label} Concept Extraction Complete",
                content=f"Extracted {len(result.concepts)} concepts from {result.element_count} elements",
                metadata={
                    "conceptCount": len(result.concepts),
                    "elementCount": result.element_count,
                    "dataset": dataset.value,
                },
            ))
        except Exception as e:
            logger.error("[%s] Failed to record extraction trail: %s", dataset.value, e)


async def extract_both(
    extractor: ConceptExtractor,
    ctx: RunContext,
    d1_elements: list[Element],
    d2_elements: list[Element],
) -> tuple[ExtractionResult, ExtractionResult]:
    """
    Run both extractions concurrently.

    The first failure cancels the other side before it is raised, so a
    failed run never gets a late trail entry from the surviving extraction.
    """
    d1_task = asyncio.ensure_future(extractor.extract(ctx, Dataset.D1, d1_elements))
    d2_task = asyncio.ensure_future(extractor.extract(ctx, Dataset.D2, d2_elements))
    tasks = [d1_task, d2_task]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return d1_task.result(), d2_task.result()
