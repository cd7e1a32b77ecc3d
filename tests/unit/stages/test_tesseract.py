"""Unit tests for alignment scoring."""

import asyncio
import json

import pytest

from audit import AlignmentScorer, DEFAULT_STEPS, ParseFailure, PipelineAborted
from audit.tesseract import build_scoring_prompt, gap_cells, parse_cells
from models import Concept, Criticality, MergeResult, PipelinePhase
from scripted import SCORING_MARKER, ScriptedCompleter


AUTH = Concept(label="Authentication", description="Login", d1_ids=["A", "B"], d2_ids=["X"])
LOGGING = Concept(label="Logging", d1_ids=["C"])
MISC = Concept(label="Misc", d2_ids=["Y"])
LABELS = {"A": "Users can log in", "B": "Sessions expire", "C": "Audit logging"}


def _cell(element_id, step, polarity, criticality="info", evidence=""):
    return {"elementId": element_id, "step": step, "polarity": polarity,
            "criticality": criticality, "evidenceSummary": evidence}


@pytest.fixture
def merge_result():
    return MergeResult(concepts=[AUTH, LOGGING, MISC])


class TestPrompt:
    """Test build_scoring_prompt."""

    def test_lists_both_sides_and_steps(self, d1_elements, d2_elements):
        elements = {e.id: e for e in d1_elements + d2_elements}
        prompt = build_scoring_prompt(AUTH, elements)

        assert prompt.startswith(SCORING_MARKER)
        assert "## Concept: Authentication" in prompt
        assert "Label: Users can log in" in prompt
        assert "Label: auth/login.py" in prompt
        assert "Audit logging" not in prompt
        assert "5. compliance:" in prompt

    def test_unknown_ids_still_listed(self):
        prompt = build_scoring_prompt(AUTH, {})
        assert "- ID: A" in prompt
        assert "- ID: X" in prompt


class TestParseCells:
    """Test parse_cells."""

    def test_valid_cells(self):
        raw = {"cells": [_cell("A", 1, 0.9, "info", "login() exists"), _cell("B", 2, -0.4, "major")]}
        cells = parse_cells(json.dumps(raw), AUTH, LABELS)

        assert [(c.element_id, c.step, c.step_label) for c in cells] == [("A", 1, "coverage"), ("B", 2, "correctness")]
        assert cells[0].element_label == "Users can log in"
        assert cells[0].evidence_summary == "login() exists"
        assert cells[1].criticality is Criticality.MAJOR

    def test_polarity_clamped(self):
        cells = parse_cells('{"cells": [{"elementId": "A", "step": 1, "polarity": 3.5}]}', AUTH, LABELS)
        assert cells[0].polarity == 1.0
        cells = parse_cells('{"cells": [{"elementId": "A", "step": 1, "polarity": "-7"}]}', AUTH, LABELS)
        assert cells[0].polarity == -1.0

    def test_foreign_and_d2_elements_dropped(self):
        raw = '{"cells": [{"elementId": "C", "step": 1, "polarity": 0}, {"elementId": "X", "step": 1, "polarity": 0}]}'
        assert parse_cells(raw, AUTH, LABELS) == []

    def test_bad_steps_and_polarity_dropped(self):
        raw = """{"cells": [
            {"elementId": "A", "step": 9, "polarity": 0.1},
            {"elementId": "A", "step": "two", "polarity": 0.1},
            {"elementId": "A", "step": 2, "polarity": null},
            "not a cell",
            {"elementId": "A", "step": "3", "polarity": "0.5"}
        ]}"""
        cells = parse_cells(raw, AUTH, LABELS)
        assert [(c.step, c.polarity) for c in cells] == [(3, 0.5)]

    def test_unknown_criticality_is_info(self):
        cells = parse_cells('{"cells": [{"elementId": "A", "step": 1, "polarity": 0, "criticality": "apocalyptic"}]}',
                            AUTH, LABELS)
        assert cells[0].criticality is Criticality.INFO

    def test_last_duplicate_wins(self):
        raw = '{"cells": [{"elementId": "A", "step": 1, "polarity": -1}, {"elementId": "A", "step": 1, "polarity": 1}]}'
        cells = parse_cells(raw, AUTH, LABELS)
        assert len(cells) == 1
        assert cells[0].polarity == 1.0

    def test_missing_cells_list_fails(self):
        with pytest.raises(ParseFailure):
            parse_cells('{"scores": []}', AUTH, LABELS)


class TestGapCells:
    """Test gap_cells."""

    def test_one_failing_coverage_cell_per_requirement(self):
        cells = gap_cells(Concept(label="Logging", d1_ids=["C", "D"]), LABELS)

        assert [c.element_id for c in cells] == ["C", "D"]
        assert all(c.step == 1 and c.step_label == "coverage" for c in cells)
        assert all(c.polarity == -1.0 and c.criticality is Criticality.CRITICAL for c in cells)
        assert cells[0].evidence_summary == "No implementation found for concept 'Logging'"
        assert cells[0].element_label == "Audit logging"


class TestAlignmentScorer:
    """Test AlignmentScorer.score."""

    def test_scores_merged_and_adds_gap_cells(self, ctx, repo, merge_result, d1_elements, d2_elements):
        completer = ScriptedCompleter({"cells": [_cell("A", 1, 0.8), _cell("B", 1, -0.2, "minor")]})
        scorer = AlignmentScorer(completer, repo)

        cells = asyncio.run(scorer.score(ctx, merge_result, d1_elements, d2_elements))

        assert len(completer.prompts) == 1
        assert [(c.element_id, c.step) for c in cells] == [("A", 1), ("B", 1), ("C", 1)]
        assert cells[-1].criticality is Criticality.CRITICAL
        stored = repo.trail.get_tesseract_cells("session-1", "")
        assert len(stored) == 3

    def test_failed_concept_is_skipped(self, ctx, d1_elements, d2_elements):
        other = Concept(label="Sessions", d1_ids=["B"], d2_ids=["Y"])
        merge_result = MergeResult(concepts=[Concept(label="Auth", d1_ids=["A"], d2_ids=["X"]), other])
        completer = ScriptedCompleter(RuntimeError("rate limited"), {"cells": [_cell("B", 4, 0.3)]})

        cells = asyncio.run(AlignmentScorer(completer).score(ctx, merge_result, d1_elements, d2_elements))

        assert [(c.element_id, c.step_label) for c in cells] == [("B", "risk")]

    def test_unparseable_concept_is_skipped(self, ctx, merge_result, d1_elements, d2_elements):
        cells = asyncio.run(AlignmentScorer(ScriptedCompleter("no idea")).score(
            ctx, merge_result, d1_elements, d2_elements))
        assert [c.element_id for c in cells] == ["C"]

    def test_progress_events(self, ctx, d1_elements, d2_elements):
        merge_result = MergeResult(concepts=[
            Concept(label="Auth", d1_ids=["A"], d2_ids=["X"]),
            Concept(label="Sessions", d1_ids=["B"], d2_ids=["Y"]),
        ])
        completer = ScriptedCompleter({"cells": []}, {"cells": []})
        asyncio.run(AlignmentScorer(completer).score(ctx, merge_result, d1_elements, d2_elements,
                                                     progress_range=(75, 90)))

        events = ctx.events
        assert [e.phase for e in events] == [PipelinePhase.BUILDING_TESSERACT] * 2
        assert [(e.tesseract_current, e.tesseract_total) for e in events] == [(1, 2), (2, 2)]
        assert [e.progress for e in events] == [75, 82]

    def test_abort_between_concepts(self, ctx, merge_result, d1_elements, d2_elements):
        ctx.request_abort()
        with pytest.raises(PipelineAborted):
            asyncio.run(AlignmentScorer(ScriptedCompleter()).score(ctx, merge_result, d1_elements, d2_elements))

    def test_custom_steps(self, ctx, merge_result, d1_elements, d2_elements):
        steps = DEFAULT_STEPS[:2]
        completer = ScriptedCompleter({"cells": [_cell("A", 5, 0.8), _cell("A", 2, 0.1)]})
        cells = asyncio.run(AlignmentScorer(completer, steps=steps).score(ctx, merge_result, d1_elements, d2_elements))
        assert [(c.element_id, c.step) for c in cells] == [("A", 2), ("C", 1)]
        assert "3. quality" not in completer.prompts[0]
