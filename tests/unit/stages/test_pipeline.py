"""Unit tests for the pipeline orchestrator."""

import asyncio

import pytest

from audit import AuditPipeline, RunContext
from config import AuditSettings
from models import PipelinePhase, SessionStatus
from repositories import MemoryRepository
from repositories.memory_backend import MemoryGraphRepository
from scripted import D1_MARKER, SCORING_MARKER, ScriptedCompleter, merge_marker, scenario_routes


class RejectingGraphRepository(MemoryGraphRepository):
    """Refuses element nodes for the given ids."""

    def __init__(self, sessions, reject_ids):
        super().__init__(sessions)
        self.reject_ids = set(reject_ids)

    def upsert_element_node(self, session_id, token, node):
        if set(node.source_element_ids) & self.reject_ids:
            raise RuntimeError("node rejected")
        return super().upsert_element_node(session_id, token, node)


class BrokenScorer:
    async def score(self, ctx, merge_result, d1_elements, d2_elements, progress_range=None):
        raise RuntimeError("scorer exploded")


def _pipeline(repo, completer, **settings):
    return AuditPipeline.from_settings(AuditSettings(**settings), repo=repo, completer=completer)


def _run(pipeline, ctx, d1, d2):
    return asyncio.run(pipeline.run(ctx, d1, d2))


class TestHappyPath:
    """Test a full scripted run."""

    def test_completes_with_scenario_venn(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes())
        outcome = _run(_pipeline(repo, completer), ctx, d1_elements, d2_elements)

        assert outcome.ok
        assert outcome.status is SessionStatus.COMPLETED
        venn = outcome.result
        assert [e.id for e in venn.aligned] == ["A", "B", "X"]
        assert [e.id for e in venn.unique_to_d1] == ["C"]
        assert [e.id for e in venn.unique_to_d2] == ["Y"]
        assert [c.label for c in outcome.merge_result.merged_concepts] == ["Authentication"]
        assert completer.calls_matching(merge_marker(1)) == 1
        assert completer.calls_matching(SCORING_MARKER) == 1

    def test_progress_is_monotonic_and_ends_completed(self, repo, ctx, d1_elements, d2_elements):
        _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)

        progress = [e.progress for e in ctx.events]
        assert progress == sorted(progress)
        phases = [e.phase for e in ctx.events]
        assert phases[0] is PipelinePhase.CREATING_NODES
        assert phases[-1] is PipelinePhase.COMPLETED
        for phase in (PipelinePhase.EXTRACTING, PipelinePhase.MERGING_CONCEPTS, PipelinePhase.BUILDING_GRAPH,
                      PipelinePhase.BUILDING_TESSERACT, PipelinePhase.GENERATING_VENN):
            assert phase in phases

        final = ctx.events[-1]
        assert final.progress == 100
        assert final.payload["summary"]["totalD1Coverage"] == 66.7

    def test_phase_counts(self, repo, ctx, d1_elements, d2_elements):
        _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)

        first = {}
        for event in ctx.events:
            first.setdefault(event.phase, event)
        merging = first[PipelinePhase.MERGING_CONCEPTS]
        assert (merging.d1_concept_count, merging.d2_concept_count) == (2, 2)
        assert first[PipelinePhase.BUILDING_GRAPH].merged_count == 1
        assert first[PipelinePhase.BUILDING_TESSERACT].tesseract_total == 1

    def test_persists_graph_session_and_venn(self, repo, ctx, d1_elements, d2_elements):
        _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)

        session = repo.sessions.get("session-1")
        assert session.status is SessionStatus.COMPLETED
        assert session.phase == "completed"
        nodes = repo.graph.get_existing_nodes_by_session("session-1", "")
        assert len(nodes) == 5 + 3
        assert len(repo.graph.get_edges_by_session("session-1", "")) == 5
        assert repo.trail.get_venn_result("session-1", "") is not None
        assert repo.trail.get_merge_log("session-1", "")[0]["to"] == "Authentication"

    def test_rerun_on_same_session_keeps_one_edge_per_member(self, repo, d1_elements, d2_elements):
        for _ in range(2):
            ctx = RunContext(session_id="session-1")
            outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)
            assert outcome.status is SessionStatus.COMPLETED

        nodes = repo.graph.get_existing_nodes_by_session("session-1", "")
        edges = repo.graph.get_edges_by_session("session-1", "")
        assert len(nodes) == 5 + 3
        pairs = [(e.source_node_id, e.target_node_id) for e in edges]
        assert len(pairs) == len(set(pairs)) == 5

    def test_creates_missing_session(self, d1_elements, d2_elements):
        repo = MemoryRepository()
        ctx = RunContext(session_id="fresh", token="secret", project_id="p")
        outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)

        assert outcome.ok
        session = repo.sessions.get("fresh")
        assert session.share_token == "secret"
        assert session.project_id == "p"
        with pytest.raises(PermissionError):
            repo.sessions.check_access("fresh", "wrong")

    def test_tesseract_disabled(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes())
        outcome = _run(_pipeline(repo, completer, enable_tesseract=False), ctx, d1_elements, d2_elements)

        assert outcome.ok
        assert outcome.cells == []
        assert completer.calls_matching(SCORING_MARKER) == 0
        assert outcome.result.summary.alignment_score == pytest.approx(58.4)

    def test_scorer_failure_is_not_fatal(self, repo, ctx, d1_elements, d2_elements):
        pipeline = _pipeline(repo, ScriptedCompleter(routes=scenario_routes()))
        pipeline.scorer = BrokenScorer()

        outcome = _run(pipeline, ctx, d1_elements, d2_elements)

        assert outcome.status is SessionStatus.COMPLETED
        assert outcome.cells == []

    def test_custom_rounds(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes())
        _run(_pipeline(repo, completer, merge_rounds=[1]), ctx, d1_elements, d2_elements)
        assert completer.calls_matching("Round 1/1") == 1
        assert completer.calls_matching(merge_marker(2)) == 0


class TestFailures:
    """Test failed, cancelled and degraded runs."""

    def test_extraction_failure(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes(d1="I could not find any concepts."))
        outcome = _run(_pipeline(repo, completer), ctx, d1_elements, d2_elements)

        assert outcome.status is SessionStatus.FAILED
        assert "D1 concept extraction failed" in outcome.error
        last = ctx.events[-1]
        assert last.phase is PipelinePhase.ERROR
        assert last.progress == 0
        session = repo.sessions.get("session-1")
        assert session.status is SessionStatus.FAILED
        assert session.phase == "error"
        assert "D1" in session.error
        assert repo.trail.get_venn_result("session-1", "") is None

    def test_uncovered_element_fails_by_default(self, repo, ctx, d1_elements, d2_elements):
        partial = {"concepts": [{"label": "Auth", "elementIds": ["A", "B"]}]}
        outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes(d1=partial))),
                       ctx, d1_elements, d2_elements)
        assert outcome.status is SessionStatus.FAILED
        assert "not assigned" in outcome.error

    def test_uncovered_element_uncategorized_policy(self, repo, ctx, d1_elements, d2_elements):
        partial = {"concepts": [{"label": "Auth", "elementIds": ["A", "B"]}]}
        outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes(d1=partial)),
                                 coverage_policy="assign_uncategorized"),
                       ctx, d1_elements, d2_elements)
        assert outcome.ok
        assert [e.id for e in outcome.result.unique_to_d1] == ["C"]

    def test_merge_parse_failure(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes(merge_round_1="merge everything!"))
        outcome = _run(_pipeline(repo, completer), ctx, d1_elements, d2_elements)
        assert outcome.status is SessionStatus.FAILED
        assert outcome.merge_result is None

    def test_abort_after_extraction(self, repo, d1_elements, d2_elements):
        def sink(event):
            if event.phase is PipelinePhase.EXTRACTING:
                ctx.request_abort()

        ctx = RunContext(session_id="session-1", progress_sink=sink)
        completer = ScriptedCompleter(routes=scenario_routes())
        outcome = _run(_pipeline(repo, completer), ctx, d1_elements, d2_elements)

        assert outcome.status is SessionStatus.CANCELLED
        assert completer.calls_matching(merge_marker(1)) == 0
        assert ctx.events[-1].phase is PipelinePhase.ERROR
        assert repo.sessions.get("session-1").status is SessionStatus.CANCELLED

    def test_abort_before_start_writes_nothing(self, repo, ctx, d1_elements, d2_elements):
        ctx.request_abort()
        completer = ScriptedCompleter(routes=scenario_routes())
        outcome = _run(_pipeline(repo, completer), ctx, d1_elements, d2_elements)

        assert outcome.status is SessionStatus.CANCELLED
        assert repo.graph.get_existing_nodes_by_session("session-1", "") == []
        assert completer.prompts == []
        assert [e.phase for e in ctx.events] == [PipelinePhase.ERROR]

    def test_graph_errors_complete_with_warnings(self, ctx, d1_elements, d2_elements):
        repo = MemoryRepository()
        repo._graph = RejectingGraphRepository(repo.sessions, reject_ids=["Y"])
        outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes())), ctx, d1_elements, d2_elements)

        assert outcome.status is SessionStatus.COMPLETED_WITH_WARNINGS
        assert outcome.ok
        targets = [e.target for e in outcome.graph_report.errors]
        assert targets == ["Y", "Y"]
        assert repo.sessions.get("session-1").status is SessionStatus.COMPLETED_WITH_WARNINGS
        assert [e.id for e in outcome.result.unique_to_d2] == ["Y"]

    def test_graph_errors_without_warning_status(self, ctx, d1_elements, d2_elements):
        repo = MemoryRepository()
        repo._graph = RejectingGraphRepository(repo.sessions, reject_ids=["Y"])
        outcome = _run(_pipeline(repo, ScriptedCompleter(routes=scenario_routes()), warn_on_graph_errors=False),
                       ctx, d1_elements, d2_elements)
        assert outcome.status is SessionStatus.COMPLETED
        assert not outcome.graph_report.ok


class TestStream:
    """Test the async event stream."""

    def test_yields_every_event(self, repo, ctx, d1_elements, d2_elements):
        pipeline = _pipeline(repo, ScriptedCompleter(routes=scenario_routes()))

        async def collect():
            return [event async for event in pipeline.stream(ctx, d1_elements, d2_elements)]

        events = asyncio.run(collect())

        assert events == ctx.events
        assert events[-1].phase is PipelinePhase.COMPLETED
        assert ctx.progress_sink is None

    def test_stream_forwards_to_outer_sink(self, repo, d1_elements, d2_elements):
        seen = []
        ctx = RunContext(session_id="session-1", progress_sink=seen.append)
        pipeline = _pipeline(repo, ScriptedCompleter(routes=scenario_routes()))

        async def collect():
            return [event async for event in pipeline.stream(ctx, d1_elements, d2_elements)]

        events = asyncio.run(collect())
        assert seen == events
        assert ctx.progress_sink == seen.append

    def test_error_stream_ends_with_error(self, repo, ctx, d1_elements, d2_elements):
        pipeline = _pipeline(repo, ScriptedCompleter(routes=scenario_routes(d1="nope")))

        async def collect():
            return [event async for event in pipeline.stream(ctx, d1_elements, d2_elements)]

        events = asyncio.run(collect())
        assert events[-1].phase is PipelinePhase.ERROR

    def test_closing_early_aborts(self, repo, ctx, d1_elements, d2_elements):
        completer = ScriptedCompleter(routes=scenario_routes())
        pipeline = _pipeline(repo, completer)

        async def first_only():
            stream = pipeline.stream(ctx, d1_elements, d2_elements)
            event = await stream.__anext__()
            await stream.aclose()
            return event

        event = asyncio.run(first_only())
        assert event.phase is PipelinePhase.CREATING_NODES
        assert ctx.abort_requested
        assert repo.sessions.get("session-1").status is SessionStatus.CANCELLED
        assert completer.calls_matching(D1_MARKER) <= 1
