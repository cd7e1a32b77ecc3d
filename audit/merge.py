"""
Concept merging - escalating rounds of model-proposed fusions.

Each round shows the model the current concept list and asks which
concepts to fuse. The proposals are reconciled against the real concepts:

1. Labels resolve case-insensitively to concepts
2. A concept can be consumed by at most one merge group (first wins)
3. Unknown labels are ignored
4. Groups with 2+ valid members produce one merged concept (id union)
5. Groups with exactly 1 valid member release it unchanged
6. Every unconsumed concept passes through untouched

Total D1 and D2 element-id counts must be the same before and after.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from pydantic import ValidationError

from models import (
    ActivityEntry,
    Concept,
    MergeLogEntry,
    MergeProposal,
    MergeResult,
    PipelinePhase,
    ProgressEvent,
)
from repositories import Repository

from .context import RunContext
from .errors import ConservationViolation, MergeParseFailure, ParseFailure
from .llm import TextCompleter, parse_json_object

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeRound:
    """Round-indexed merge configuration."""
    number: int
    label: str
    criteria: str


MERGE_ROUNDS: dict[int, MergeRound] = {
    1: MergeRound(
        number=1,
        label="EXACT MATCHING",
        criteria="""Only merge concepts that are:
- Nearly identical names (e.g., "User Auth" and "User Authentication")
- Obvious duplicates with minor wording differences
- Clearly the same concept described differently""",
    ),
    2: MergeRound(
        number=2,
        label="THEMATIC MATCHING",
        criteria="""Merge concepts that are:
- Thematically related (e.g., "Login Flow" + "Session Management" -> "Authentication System")
- Part of the same functional domain
- Logically connected sub-concepts""",
    ),
    3: MergeRound(
        number=3,
        label="AGGRESSIVE CONSOLIDATION",
        criteria="""Aggressively merge into broad categories:
- Combine related domains (e.g., "Auth", "Permissions", "Roles" -> "Access Control")
- Create high-level concepts
- Target 5-15 final concepts
- When in doubt, MERGE""",
    ),
}

MERGE_PROMPT = """You are merging concepts. Round {round}/{total_rounds}: {round_label}

**MERGE CRITERIA:**
{criteria}

**Current concepts ({count} total):**

{concepts_text}

## Your Task

Identify which concepts should be MERGED. For each merge:
1. List the source concept names (EXACT names from the list above)
2. Provide the new merged label
3. Provide a merged description

**CRITICAL RULES:**
- Each concept can appear in AT MOST ONE merge group
- Only output merges for 2+ concepts being combined
- Concepts not listed in any merge will pass through unchanged
- Use the EXACT concept names from the list (the quoted text after the number)

## Output Format

Return JSON:
{{
  "merges": [
    {{
      "sourceConcepts": ["User Authentication", "Login System"],
      "mergedLabel": "Authentication & Login",
      "mergedDescription": "Handles user authentication and login functionality"
    }}
  ]
}}

If no merges should happen, return: {{"merges": []}}

Return ONLY the JSON object."""


def round_config(round_number: int) -> MergeRound:
    """Configuration for a round; unknown rounds use round 1 criteria."""
    return MERGE_ROUNDS.get(round_number, MERGE_ROUNDS[1])


def count_elements(concepts: Iterable[Concept]) -> tuple[int, int]:
    """(total D1 ids, total D2 ids) across a concept set."""
    d1_total = 0
    d2_total = 0
    for c in concepts:
        d1_total += len(c.d1_ids)
        d2_total += len(c.d2_ids)
    return d1_total, d2_total


def _union(groups: Iterable[list[str]]) -> list[str]:
    """Order-preserving set union."""
    seen = set()
    result = []
    for group in groups:
        for item in group:
            if item not in seen:
                seen.add(item)
                result.append(item)
    return result


def ensure_unique_labels(concepts: list[Concept]) -> list[Concept]:
    """
    Suffix case-insensitive duplicate labels with (2), (3), ...

    Reconciliation is keyed by label, so two concepts sharing one would be
    indistinguishable to it.
    """
    seen: set[str] = set()
    result = []
    for concept in concepts:
        label = concept.label
        n = 2
        while label.lower() in seen:
            label = f"{concept.label} ({n})"
            n += 1
        seen.add(label.lower())
        if label != concept.label:
            concept = concept.model_copy(update={"label": label})
        result.append(concept)
    return result


def format_concepts(concepts: list[Concept]) -> str:
    """Numbered concept listing with source counts and up to 3 element labels."""
    blocks = []
    for i, c in enumerate(concepts, 1):
        preview = ""
        if c.element_labels:
            shown = "; ".join(label[:60] for label in c.element_labels[:3])
            more = f" (+{len(c.element_labels) - 3} more)" if len(c.element_labels) > 3 else ""
            preview = f"\n  Elements: {shown}{more}"
        blocks.append(f'{i}. "{c.label}" {c.source_annotation()}\n  Description: {c.description}{preview}')
    return "\n\n".join(blocks)


def build_merge_prompt(concepts: list[Concept], round_number: int, total_rounds: int) -> str:
    config = round_config(round_number)
    return MERGE_PROMPT.format(
        round=round_number,
        total_rounds=total_rounds,
        round_label=config.label,
        criteria=config.criteria,
        count=len(concepts),
        concepts_text=format_concepts(concepts),
    )


def parse_merge_proposals(raw_text: str) -> list[MergeProposal]:
    """Model output -> merge proposals. Raises MergeParseFailure."""
    try:
        parsed = parse_json_object(raw_text, context="merge")
    except ParseFailure as e:
        raise MergeParseFailure(str(e)) from e

    merges = parsed.get("merges", [])
    if merges is None:
        return []
    if not isinstance(merges, list):
        raise MergeParseFailure("[merge] 'merges' is not a list")

    try:
        return [MergeProposal.model_validate(m) for m in merges]
    except ValidationError as e:
        raise MergeParseFailure(f"[merge] malformed merge group: {e}") from e


def reconcile_merges(
    concepts: list[Concept],
    proposals: list[MergeProposal],
) -> tuple[list[Concept], list[MergeLogEntry]]:
    """
    Apply proposals to concepts.

    Returns (output concepts, merge log). Merged concepts come first, in
    proposal order, followed by pass-through concepts in input order.
    """
    by_label = {c.key: c for c in concepts}
    merged_labels: set[str] = set()
    output: list[Concept] = []
    merge_log: list[MergeLogEntry] = []

    for proposal in proposals:
        members: list[Concept] = []
        for label in proposal.source_concepts:
            key = label.lower()
            if key in merged_labels:
                logger.info('[merge] SKIP: "%s" already merged', label)
                continue
            found = by_label.get(key)
            if found is None:
                logger.info('[merge] NOT FOUND: "%s"', label)
                continue
            members.append(found)
            merged_labels.add(key)

        if len(members) >= 2:
            merged = Concept(
                label=proposal.merged_label,
                description=proposal.merged_description,
                d1_ids=_union(c.d1_ids for c in members),
                d2_ids=_union(c.d2_ids for c in members),
                element_labels=_union(c.element_labels for c in members),
            )
            output.append(merged)
            member_labels = [c.label for c in members]
            merge_log.append(MergeLogEntry(from_labels=member_labels, to=proposal.merged_label))
            logger.info(
                '[merge] MERGED: "%s" <- [%s] (%d D1, %d D2)',
                merged.label, ", ".join(member_labels), len(merged.d1_ids), len(merged.d2_ids),
            )
        elif len(members) == 1:
            merged_labels.discard(members[0].key)
            logger.info('[merge] UNMERGE: "%s" (only 1 valid source)', members[0].label)

    for concept in concepts:
        if concept.key not in merged_labels:
            output.append(concept)

    return output, merge_log


def verify_conservation(
    before: list[Concept],
    after: list[Concept],
    round_number: Optional[int] = None,
    enforce: bool = True,
) -> None:
    """Raise ConservationViolation (or log, when not enforced) if counts differ."""
    in_d1, in_d2 = count_elements(before)
    out_d1, out_d2 = count_elements(after)
    if in_d1 == out_d1 and in_d2 == out_d2:
        logger.info("[merge] Element counts verified: %d D1, %d D2", out_d1, out_d2)
        return

    violation = ConservationViolation(in_d1, out_d1, in_d2, out_d2, round=round_number)
    if enforce:
        raise violation
    logger.error("[merge] %s", violation)


class ConceptMerger:
    """
    Runs merge rounds against a text completer.

    Usage:
        merger = ConceptMerger(completer, repo)
        result = await merger.merge_all(ctx, d1_concepts, d2_concepts)
        result.merged_concepts, result.unmerged_d1_concepts, result.unmerged_d2_concepts
    """

    def __init__(
        self,
        completer: TextCompleter,
        repo: Optional[Repository] = None,
        max_tokens: int = 16384,
        enforce_conservation: bool = True,
    ):
        self.completer = completer
        self.repo = repo
        self.max_tokens = max_tokens
        self.enforce_conservation = enforce_conservation

    async def merge_round(
        self,
        ctx: RunContext,
        concepts: list[Concept],
        round_number: int = 1,
        total_rounds: int = 3,
    ) -> MergeResult:
        """One reconciliation pass. Raises MergeParseFailure / ConservationViolation."""
        concepts = ensure_unique_labels(concepts)
        in_d1, in_d2 = count_elements(concepts)
        logger.info(
            "[merge] Round %d/%d INPUT: %d concepts, %d D1 elements, %d D2 elements",
            round_number, total_rounds, len(concepts), in_d1, in_d2,
        )

        if len(concepts) < 2:
            output, merge_log = list(concepts), []
        else:
            prompt = build_merge_prompt(concepts, round_number, total_rounds)
            try:
                raw_text = await self.completer.complete(prompt, self.max_tokens)
            except Exception as e:
                raise MergeParseFailure(f"[merge] model call failed: {e}") from e
            logger.info("[merge] LLM response (%d chars)", len(raw_text or ""))
            proposals = parse_merge_proposals(raw_text)
            output, merge_log = reconcile_merges(concepts, proposals)

        verify_conservation(concepts, output, round_number, enforce=self.enforce_conservation)
        out_d1, out_d2 = count_elements(output)

        result = MergeResult(
            round=round_number,
            concepts=output,
            merge_log=merge_log,
            input_count=len(concepts),
            output_count=len(output),
            d1_element_count=out_d1,
            d2_element_count=out_d2,
        )
        self._record(ctx, result, total_rounds)
        return result

    async def merge_all(
        self,
        ctx: RunContext,
        d1_concepts: list[Concept],
        d2_concepts: list[Concept],
        rounds: Iterable[int] = (1, 2, 3),
        progress_range: Optional[tuple[int, int]] = None,
    ) -> MergeResult:
        """
        Run rounds in order, each consuming the previous round's output.

        Stops early once a single concept (or none) remains.
        """
        rounds = list(rounds) or [1]
        concepts = list(d1_concepts) + list(d2_concepts)
        input_count = len(concepts)
        merge_log: list[MergeLogEntry] = []
        result = None

        for index, round_number in enumerate(rounds):
            ctx.check_abort()
            if progress_range:
                low, high = progress_range
                ctx.report(ProgressEvent(
                    phase=PipelinePhase.MERGING_CONCEPTS,
                    message=f"Round {index + 1}/{len(rounds)}: {round_config(round_number).label} over {len(concepts)} concepts...",
                    progress=low + (high - low) * index // len(rounds),
                ))

            result = await self.merge_round(ctx, concepts, round_number, total_rounds=len(rounds))
            merge_log.extend(result.merge_log)
            concepts = result.concepts
            if len(concepts) <= 1:
                logger.info("[merge] %d concept(s) left, stopping after round %d", len(concepts), round_number)
                break

        return result.model_copy(update={"merge_log": merge_log, "input_count": input_count})

    def _record(self, ctx: RunContext, result: MergeResult, total_rounds: int) -> None:
        """Merge log + activity entry. Best effort."""
        if self.repo is None:
            return
        try:
            if result.merge_log:
                self.repo.trail.record_merge_log(ctx.session_id, ctx.token, result.round, result.merge_log)
            self.repo.trail.append_activity(ctx.token, ActivityEntry(
                session_id=ctx.session_id,
                agent_role="concept_merger",
                activity_type="concept_merge",
                title=f"Round {result.round}/{total_rounds}: {result.input_count} -> {result.output_count} concepts",
                content=(
                    "Merges:\n" + "\n".join(f"- {m.summary()}" for m in result.merge_log)
                    if result.merge_log else "No merges in this round"
                ),
                metadata={
                    "round": result.round,
                    "totalRounds": total_rounds,
                    "inputCount": result.input_count,
                    "outputCount": result.output_count,
                    "mergeCount": len(result.merge_log),
                    "d1ElementCount": result.d1_element_count,
                    "d2ElementCount": result.d2_element_count,
                },
            ))
        except Exception as e:
            logger.error("[merge] Failed to record merge trail: %s", e)
