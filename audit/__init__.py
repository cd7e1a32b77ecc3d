"""
Audit - cross-dataset concept alignment

Two datasets (D1 requirements, D2 implementation) are reduced to concepts,
merged in escalating rounds, linked into a traceability graph, scored, and
classified into a three-way Venn result.

Modules:
- llm: Text-completion capability and tolerant JSON parsing
- extract: Per-dataset concept extraction (coverage enforced)
- merge: Multi-round concept merging (conservation enforced)
- graph: Element/concept nodes and provenance edges
- tesseract: Per-element, per-step alignment scoring
- venn: Final unique/aligned/unique classification
- pipeline: Orchestrates the stages (EXTRACT -> MERGE -> GRAPH -> SCORE -> VENN)
- tools: Agent tool schemas and executor
"""

from .errors import (
    AuditError,
    ParseFailure,
    ExtractionFailure,
    MergeParseFailure,
    ConservationViolation,
    GraphWriteFailure,
    SessionUpdateFailure,
    PipelineAborted,
    ToolError,
)
from .context import RunContext
from .llm import TextCompleter, ClientCompleter, parse_json_object
from .extract import ConceptExtractor, extract_both, normalize_concepts
from .merge import MERGE_ROUNDS, ConceptMerger, reconcile_merges, verify_conservation
from .graph import NODE_STYLE, GraphSynthesizer
from .tesseract import DEFAULT_STEPS, AlignmentScorer
from .venn import VennFinalizer
from .pipeline import AuditPipeline, PipelineOutcome
from .tools import ORCHESTRATOR_TOOLS, ToolExecutor, get_anthropic_tools, get_openai_tools

__all__ = [
    # errors
    'AuditError',
    'ParseFailure',
    'ExtractionFailure',
    'MergeParseFailure',
    'ConservationViolation',
    'GraphWriteFailure',
    'SessionUpdateFailure',
    'PipelineAborted',
    'ToolError',
    # context / llm
    'RunContext',
    'TextCompleter',
    'ClientCompleter',
    'parse_json_object',
    # stages
    'ConceptExtractor',
    'extract_both',
    'normalize_concepts',
    'MERGE_ROUNDS',
    'ConceptMerger',
    'reconcile_merges',
    'verify_conservation',
    'NODE_STYLE',
    'GraphSynthesizer',
    'DEFAULT_STEPS',
    'AlignmentScorer',
    'VennFinalizer',
    # pipeline
    'AuditPipeline',
    'PipelineOutcome',
    # tools
    'ORCHESTRATOR_TOOLS',
    'ToolExecutor',
    'get_anthropic_tools',
    'get_openai_tools',
]
