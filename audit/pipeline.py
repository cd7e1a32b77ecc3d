"""
Pipeline orchestrator - sequences every stage for one audit session.

    idle -> creating_nodes -> extracting -> merging_concepts -> building_graph
         -> building_tesseract -> generating_venn -> completed

Any fatal failure moves the run to `error` and marks the session failed.
The abort flag is checked between stages; an in-flight model call is
never interrupted.

Usage:
    pipeline = AuditPipeline.from_settings(repo=repo)
    outcome = await pipeline.run(ctx, d1_elements, d2_elements)

    async for event in pipeline.stream(ctx, d1_elements, d2_elements):
        print(event.to_dict())
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from config import AuditSettings, load_settings
from models import (
    PHASE_PROGRESS,
    AuditSession,
    Dataset,
    Element,
    GraphWriteReport,
    MergeResult,
    PipelinePhase,
    ProgressEvent,
    SessionStatus,
    TesseractCell,
    VennResult,
)
from repositories import Repository, get_repository

from .context import RunContext
from .errors import AuditError, PipelineAborted, SessionUpdateFailure
from .extract import ConceptExtractor, extract_both
from .graph import GraphSynthesizer
from .llm import ClientCompleter, TextCompleter
from .merge import ConceptMerger
from .tesseract import AlignmentScorer
from .venn import VennFinalizer

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    """What a finished run produced, whichever way it ended."""
    status: SessionStatus
    result: Optional[VennResult] = None
    error: Optional[str] = None
    graph_report: GraphWriteReport = field(default_factory=GraphWriteReport)
    merge_result: Optional[MergeResult] = None
    cells: list[TesseractCell] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.COMPLETED_WITH_WARNINGS)


class AuditPipeline:
    """Runs extraction, merging, graph synthesis, scoring and Venn finalization."""

    def __init__(
        self,
        repo: Repository,
        extractor: ConceptExtractor,
        merger: ConceptMerger,
        scorer: Optional[AlignmentScorer] = None,
        settings: Optional[AuditSettings] = None,
    ):
        self.repo = repo
        self.settings = settings or AuditSettings()
        self.extractor = extractor
        self.merger = merger
        self.scorer = scorer
        self.graph = GraphSynthesizer(repo)
        self.finalizer = VennFinalizer(repo)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AuditSettings] = None,
        repo: Optional[Repository] = None,
        completer: Optional[TextCompleter] = None,
    ) -> "AuditPipeline":
        """
        Wire every stage from settings.

        Without an explicit completer, extraction and merging each get a
        provider client at their configured temperature.
        """
        settings = settings or load_settings()
        repo = repo or get_repository()

        if completer is None:
            base = ClientCompleter(settings.model, temperature=settings.extract_temperature)
            extract_completer = base
            merge_completer = base.with_temperature(settings.merge_temperature)
        else:
            extract_completer = merge_completer = completer

        extractor = ConceptExtractor(
            extract_completer,
            repo,
            max_tokens=settings.extract_max_tokens,
            content_limit=settings.content_limit,
            coverage_policy=settings.coverage_policy,
        )
        merger = ConceptMerger(
            merge_completer,
            repo,
            max_tokens=settings.max_tokens,
            enforce_conservation=settings.enforce_conservation,
        )
        scorer = None
        if settings.enable_tesseract:
            scorer = AlignmentScorer(
                extract_completer,
                repo,
                max_tokens=settings.extract_max_tokens,
                content_limit=settings.content_limit,
            )
        return cls(repo, extractor, merger, scorer, settings)

    # ==================== RUN ====================

    async def run(
        self,
        ctx: RunContext,
        d1_elements: list[Element],
        d2_elements: list[Element],
    ) -> PipelineOutcome:
        """Run every stage. Never raises for stage failures; see the outcome's status."""
        tag = ctx.session_id[:8]
        report = GraphWriteReport()
        merge_result: Optional[MergeResult] = None
        cells: list[TesseractCell] = []

        try:
            self._ensure_session(ctx)

            # Element nodes
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.CREATING_NODES,
                        f"Creating {len(d1_elements)} D1 and {len(d2_elements)} D2 nodes...")
            report.extend(self.graph.create_element_nodes(ctx, Dataset.D1, d1_elements))
            report.extend(self.graph.create_element_nodes(ctx, Dataset.D2, d2_elements))

            # Extraction
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.EXTRACTING,
                        f"Extracting concepts from {len(d1_elements)} D1 and {len(d2_elements)} D2 elements...")
            d1_result, d2_result = await extract_both(self.extractor, ctx, d1_elements, d2_elements)
            logger.info("[Pipeline] %s: D1 returned %d concepts, D2 returned %d",
                        tag, len(d1_result.concepts), len(d2_result.concepts))

            labels_by_id = {e.id: e.label for e in d2_elements}
            labels_by_id.update({e.id: e.label for e in d1_elements})
            d1_concepts = d1_result.to_concepts(labels_by_id)
            d2_concepts = d2_result.to_concepts(labels_by_id)

            # Merge
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.MERGING_CONCEPTS,
                        f"Merging {len(d1_concepts)} D1 and {len(d2_concepts)} D2 concepts...",
                        d1_concept_count=len(d1_concepts), d2_concept_count=len(d2_concepts))
            merge_result = await self.merger.merge_all(
                ctx, d1_concepts, d2_concepts,
                rounds=self.settings.merge_rounds,
                progress_range=self._range(PipelinePhase.MERGING_CONCEPTS, PipelinePhase.BUILDING_GRAPH),
            )
            merged = merge_result.merged_concepts
            logger.info(
                "[Pipeline] %s: merge returned %d merged, %d unmerged D1, %d unmerged D2",
                tag, len(merged), len(merge_result.unmerged_d1_concepts), len(merge_result.unmerged_d2_concepts),
            )

            # Concept graph
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.BUILDING_GRAPH,
                        f"Creating {len(merged)} merged concept nodes and edges...",
                        merged_count=len(merged))
            report.extend(self.graph.build_concept_graph(ctx, merge_result))

            # Tesseract
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.BUILDING_TESSERACT,
                        f"Analyzing {len(merged)} merged concepts for alignment...",
                        tesseract_total=len(merged))
            if self.scorer is not None:
                try:
                    cells = await self.scorer.score(
                        ctx, merge_result, d1_elements, d2_elements,
                        progress_range=self._range(PipelinePhase.BUILDING_TESSERACT, PipelinePhase.GENERATING_VENN),
                    )
                except PipelineAborted:
                    raise
                except Exception as e:
                    logger.error("[Pipeline] %s: Tesseract failed, continuing: %s", tag, e)
                    cells = []

            # Venn
            ctx.check_abort()
            self._enter(ctx, PipelinePhase.GENERATING_VENN, "Generating final Venn analysis...")
            venn = self.finalizer.finalize(merge_result, d1_elements, d2_elements, cells)
            self.finalizer.save(ctx, venn)

        except PipelineAborted as e:
            logger.warning("[Pipeline] %s: %s", tag, e)
            self._update_session(ctx, SessionStatus.CANCELLED, PipelinePhase.ERROR.value, str(e))
            self._fail_event(ctx, str(e))
            return PipelineOutcome(SessionStatus.CANCELLED, error=str(e), graph_report=report,
                                   merge_result=merge_result, cells=cells)
        except Exception as e:
            if isinstance(e, AuditError):
                logger.error("[Pipeline] %s: Error: %s", tag, e)
            else:
                logger.exception("[Pipeline] %s: Unexpected error", tag)
            self._update_session(ctx, SessionStatus.FAILED, PipelinePhase.ERROR.value, str(e))
            self._fail_event(ctx, str(e))
            return PipelineOutcome(SessionStatus.FAILED, error=str(e), graph_report=report,
                                   merge_result=merge_result, cells=cells)

        status = SessionStatus.COMPLETED
        message = "Audit pipeline complete!"
        if not report.ok:
            logger.warning("[Pipeline] %s: %d graph write(s) failed", tag, len(report.errors))
            if self.settings.warn_on_graph_errors:
                status = SessionStatus.COMPLETED_WITH_WARNINGS
                message = f"Audit pipeline complete with {len(report.errors)} graph write error(s)"

        self._update_session(ctx, status, PipelinePhase.COMPLETED.value)
        ctx.report(ProgressEvent(
            phase=PipelinePhase.COMPLETED,
            message=message,
            progress=PHASE_PROGRESS[PipelinePhase.COMPLETED],
            payload=venn.to_dict(),
        ))
        logger.info("[Pipeline] %s: Complete!", tag)
        return PipelineOutcome(status, result=venn, graph_report=report, merge_result=merge_result, cells=cells)

    async def stream(
        self,
        ctx: RunContext,
        d1_elements: list[Element],
        d2_elements: list[Element],
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run the pipeline, yielding progress events as they happen.

        The last event is either `completed` (payload holds the Venn
        result) or `error`. Closing the generator early requests an abort.
        """
        queue: asyncio.Queue = asyncio.Queue()
        outer_sink = ctx.progress_sink

        def sink(event: ProgressEvent) -> None:
            queue.put_nowait(event)
            if outer_sink is not None:
                outer_sink(event)

        ctx.progress_sink = sink
        task = asyncio.create_task(self.run(ctx, d1_elements, d2_elements))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
            await task
        finally:
            ctx.progress_sink = outer_sink
            if not task.done():
                ctx.request_abort()
                await task

    # ==================== HELPERS ====================

    @staticmethod
    def _range(start: PipelinePhase, end: PipelinePhase) -> tuple[int, int]:
        return PHASE_PROGRESS[start], PHASE_PROGRESS[end]

    def _enter(self, ctx: RunContext, phase: PipelinePhase, message: str, **counts) -> None:
        logger.info("[Pipeline] %s: %s", ctx.session_id[:8], message)
        self._update_session(ctx, SessionStatus.RUNNING, phase.value)
        ctx.report(ProgressEvent(phase=phase, message=message, progress=PHASE_PROGRESS[phase], **counts))

    def _fail_event(self, ctx: RunContext, message: str) -> None:
        ctx.report(ProgressEvent(
            phase=PipelinePhase.ERROR,
            message=message,
            progress=PHASE_PROGRESS[PipelinePhase.ERROR],
        ))

    def _ensure_session(self, ctx: RunContext) -> None:
        """Create the session record on first run."""
        if self.repo.sessions.get(ctx.session_id) is not None:
            return
        self.repo.sessions.create(AuditSession(
            id=ctx.session_id,
            project_id=ctx.project_id,
            share_token=ctx.token or None,
            status=SessionStatus.RUNNING,
            phase=PipelinePhase.IDLE.value,
        ))

    def _update_session(
        self,
        ctx: RunContext,
        status: SessionStatus,
        phase: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Persist session status. Failures are logged, never raised."""
        try:
            self.repo.sessions.update_status(ctx.session_id, ctx.token, status, phase, error)
        except Exception as e:
            failure = SessionUpdateFailure(f"could not set {status.value}/{phase}: {e}")
            logger.error("[Pipeline] %s: %s", ctx.session_id[:8], failure)
