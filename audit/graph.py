"""
Graph synthesis - materialize the traceability graph for a session.

Element nodes are created up front, before extraction. After merging, one
concept node is created per concept and linked to the element nodes of
its members:

    D1 element --defines-->    concept
    D2 element --implements--> concept

Writes are issued one at a time. A failed write is recorded in the
GraphWriteReport and skipped; it never stops synthesis.
"""

import logging
from typing import Optional

from models import (
    Concept,
    Dataset,
    EdgeType,
    Element,
    GraphEdge,
    GraphNode,
    GraphWriteReport,
    MergeResult,
    NodeType,
    SourceDataset,
)
from repositories import Repository

from .context import RunContext
from .errors import GraphWriteFailure, ToolError

logger = logging.getLogger(__name__)

# (color, size) per node role
NODE_STYLE = {
    "d1_element": ("#3b82f6", 15),   # Blue
    "d2_element": ("#22c55e", 15),   # Green
    "merged": ("#a855f7", 25),       # Purple
    "gap": ("#ef4444", 22),          # Red - requirement with no implementation
    "orphan": ("#f59e0b", 22),       # Orange - implementation with no requirement
    "agent": ("#64748b", 20),        # Slate
}

DESCRIPTION_LIMIT = 500


class GraphSynthesizer:
    """
    Builds graph nodes and edges through the repository.

    Usage:
        synth = GraphSynthesizer(repo)
        report = synth.create_element_nodes(ctx, Dataset.D1, d1_elements)
        report.extend(synth.build_concept_graph(ctx, merge_result))
    """

    def __init__(self, repo: Repository, agent: str = "pipeline"):
        self.repo = repo
        self.agent = agent

    # ==================== ELEMENT NODES ====================

    def create_element_nodes(self, ctx: RunContext, dataset: Dataset, elements: list[Element]) -> GraphWriteReport:
        """Upsert one node per element. Safe to repeat for the same elements."""
        report = GraphWriteReport()
        color, size = NODE_STYLE[dataset.node_type]
        logger.info("[graph] Creating %d %s nodes...", len(elements), dataset.value.upper())

        for element in elements:
            node = GraphNode(
                session_id=ctx.session_id,
                label=element.label,
                description=(element.content or "")[:DESCRIPTION_LIMIT],
                node_type=NodeType(dataset.node_type),
                source_dataset=SourceDataset(dataset.source_dataset),
                source_element_ids=[element.id],
                color=color,
                size=size,
                created_by_agent=self.agent,
                metadata={"category": element.category or "unknown"},
            )
            try:
                self.repo.graph.upsert_element_node(ctx.session_id, ctx.token, node)
                report.nodes_written += 1
            except Exception as e:
                logger.error("[graph] Error creating %s node %r: %s", dataset.value.upper(), element.label, e)
                report.record_error("upsert_element_node", element.id, e)

        return report

    # ==================== CONCEPT NODES ====================

    def build_concept_graph(self, ctx: RunContext, merge_result: MergeResult) -> GraphWriteReport:
        """Concept nodes for merged, gap and orphan concepts, with edges from their elements."""
        report = GraphWriteReport()
        index = self._element_index(ctx, report)
        existing = self._edge_keys(ctx, report)

        for concept in merge_result.merged_concepts:
            node = self._upsert_concept(ctx, concept, "merged", SourceDataset.BOTH, {
                "merged": True,
                "d1Count": len(concept.d1_ids),
                "d2Count": len(concept.d2_ids),
            }, report)
            if node:
                self._link_members(ctx, index, existing, node, concept.d1_ids, Dataset.D1, report)
                self._link_members(ctx, index, existing, node, concept.d2_ids, Dataset.D2, report)

        for concept in merge_result.unmerged_d1_concepts:
            node = self._upsert_concept(ctx, concept, "gap", SourceDataset.DATASET1,
                                        {"gap": True, "unmerged": True}, report)
            if node:
                self._link_members(ctx, index, existing, node, concept.d1_ids, Dataset.D1, report)

        for concept in merge_result.unmerged_d2_concepts:
            node = self._upsert_concept(ctx, concept, "orphan", SourceDataset.DATASET2,
                                        {"orphan": True, "unmerged": True}, report)
            if node:
                self._link_members(ctx, index, existing, node, concept.d2_ids, Dataset.D2, report)

        logger.info(
            "[graph] %d nodes, %d edges written, %d errors",
            report.nodes_written, report.edges_written, len(report.errors),
        )
        return report

    def _element_index(self, ctx: RunContext, report: GraphWriteReport) -> dict[tuple[str, str], GraphNode]:
        """(node type, element id) -> element node, from the nodes already in the session."""
        try:
            nodes = self.repo.graph.get_existing_nodes_by_session(ctx.session_id, ctx.token)
        except Exception as e:
            logger.error("[graph] Could not load existing nodes: %s", e)
            report.record_error("get_existing_nodes_by_session", ctx.session_id, e)
            return {}

        index = {}
        for node in nodes:
            if not node.node_type.is_element:
                continue
            for element_id in node.source_element_ids:
                index.setdefault((node.node_type.value, element_id), node)
        return index

    def _edge_keys(self, ctx: RunContext, report: GraphWriteReport) -> set[tuple[str, str, str]]:
        """(source, target, edge type) of every edge already in the session."""
        try:
            edges = self.repo.graph.get_edges_by_session(ctx.session_id, ctx.token)
        except Exception as e:
            logger.error("[graph] Could not load existing edges: %s", e)
            report.record_error("get_edges_by_session", ctx.session_id, e)
            return set()
        return {(e.source_node_id, e.target_node_id, e.edge_type.value) for e in edges}

    def _upsert_concept(
        self,
        ctx: RunContext,
        concept: Concept,
        role: str,
        source: SourceDataset,
        metadata: dict,
        report: GraphWriteReport,
    ) -> Optional[GraphNode]:
        color, size = NODE_STYLE[role]
        node = GraphNode(
            session_id=ctx.session_id,
            label=concept.label,
            description=concept.description,
            node_type=NodeType.CONCEPT,
            source_dataset=source,
            source_element_ids=concept.d1_ids + concept.d2_ids,
            color=color,
            size=size,
            created_by_agent=self.agent,
            metadata=metadata,
        )
        try:
            stored = self.repo.graph.upsert_concept_node(ctx.session_id, ctx.token, node)
            report.nodes_written += 1
            return stored
        except Exception as e:
            logger.error("[graph] Error creating %s concept %r: %s", role, concept.label, e)
            report.record_error("upsert_concept_node", concept.label, e)
            return None

    def _link_members(
        self,
        ctx: RunContext,
        index: dict[tuple[str, str], GraphNode],
        existing: set[tuple[str, str, str]],
        concept_node: GraphNode,
        element_ids: list[str],
        dataset: Dataset,
        report: GraphWriteReport,
    ) -> None:
        edge_type = EdgeType(dataset.edge_type)
        for element_id in element_ids:
            element_node = index.get((dataset.node_type, element_id))
            if element_node is None:
                report.record_error("insert_edge", element_id, GraphWriteFailure("no element node for id"))
                continue
            key = (element_node.id, concept_node.id, edge_type.value)
            if key in existing:
                continue
            edge = GraphEdge(
                session_id=ctx.session_id,
                source_node_id=element_node.id,
                target_node_id=concept_node.id,
                edge_type=edge_type,
                label=edge_type.value,
                weight=1.0,
                created_by_agent=self.agent,
            )
            try:
                self.repo.graph.insert_edge(ctx.session_id, ctx.token, edge)
                existing.add(key)
                report.edges_written += 1
            except Exception as e:
                logger.error("[graph] Error linking %s -> %r: %s", element_id, concept_node.label, e)
                report.record_error("insert_edge", element_id, e)

    # ==================== AGENT OPERATIONS ====================

    def create_concept(
        self,
        ctx: RunContext,
        label: str,
        description: str,
        node_type: str,
        source_dataset: str,
        source_element_ids: list[str],
    ) -> tuple[GraphNode, GraphWriteReport]:
        """
        Concept node from explicit element ids, linked from their element nodes.

        Raises ToolError for empty id lists or unknown node types.
        """
        if not source_element_ids:
            raise ToolError("create_concept requires at least one source element id")
        try:
            node_kind = NodeType(node_type)
            source = SourceDataset(source_dataset)
        except ValueError as e:
            raise ToolError(str(e)) from e
        if node_kind.is_element:
            raise ToolError(f"create_concept cannot create {node_type} nodes")

        report = GraphWriteReport()
        index = self._element_index(ctx, report)
        existing = self._edge_keys(ctx, report)
        color, size = NODE_STYLE["agent"]
        node = GraphNode(
            session_id=ctx.session_id,
            label=label,
            description=description,
            node_type=node_kind,
            source_dataset=source,
            source_element_ids=list(dict.fromkeys(source_element_ids)),
            color=color,
            size=size,
            created_by_agent=self.agent,
        )
        stored = self.repo.graph.upsert_concept_node(ctx.session_id, ctx.token, node)
        report.nodes_written += 1

        for element_id in stored.source_element_ids:
            if (Dataset.D1.node_type, element_id) in index:
                dataset = Dataset.D1
            elif (Dataset.D2.node_type, element_id) in index:
                dataset = Dataset.D2
            else:
                report.record_error("insert_edge", element_id, GraphWriteFailure("no element node for id"))
                continue
            self._link_members(ctx, index, existing, stored, [element_id], dataset, report)

        return stored, report

    def link_concepts(
        self,
        ctx: RunContext,
        source_node_id: str,
        target_node_id: str,
        edge_type: str,
        label: Optional[str] = None,
    ) -> GraphEdge:
        """Edge between two existing nodes, addressed by full id or 8-char prefix."""
        try:
            kind = EdgeType(edge_type)
        except ValueError as e:
            raise ToolError(str(e)) from e

        source = self.repo.graph.get_node(ctx.session_id, ctx.token, source_node_id)
        target = self.repo.graph.get_node(ctx.session_id, ctx.token, target_node_id)
        if source is None:
            raise ToolError(f"Unknown node: {source_node_id}")
        if target is None:
            raise ToolError(f"Unknown node: {target_node_id}")

        edge = GraphEdge(
            session_id=ctx.session_id,
            source_node_id=source.id,
            target_node_id=target.id,
            edge_type=kind,
            label=label or kind.value,
            created_by_agent=self.agent,
        )
        return self.repo.graph.insert_edge(ctx.session_id, ctx.token, edge)
