"""
Agent tool contract - the operations a controlling agent may invoke.

ORCHESTRATOR_TOOLS holds the JSON-schema definitions; ToolExecutor runs a
call against a session. create_concept / link_concepts go through the
GraphSynthesizer and finalize_venn through the VennFinalizer, so agents
and the batch pipeline write the same graph the same way.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from models import BlackboardEntry, Dataset, Element, TesseractCell
from repositories import Repository

from .context import RunContext
from .errors import ToolError
from .graph import GraphSynthesizer
from .venn import VennFinalizer

logger = logging.getLogger(__name__)

BLACKBOARD_ENTRY_TYPES = ["plan", "finding", "observation", "question", "conclusion", "tool_result"]
QUERY_FILTERS = ["all", "dataset1_only", "dataset2_only", "shared", "orphans"]

_CLASSIFIED_ITEM = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "label": {"type": "string"},
        "criticality": {"type": "string"},
        "evidence": {"type": "string"},
    },
}

ORCHESTRATOR_TOOLS: list[dict[str, Any]] = [
    {
        "name": "read_dataset_item",
        "description": "Read the full content of a specific item from Dataset 1 or Dataset 2. Use this to get detailed information about a requirement, file, or artifact.",
        "parameters": {
            "type": "object",
            "properties": {
                "dataset": {"type": "string", "enum": ["dataset1", "dataset2"], "description": "Which dataset the item belongs to"},
                "itemId": {"type": "string", "description": "The id of the item to read"},
            },
            "required": ["dataset", "itemId"],
        },
    },
    {
        "name": "query_knowledge_graph",
        "description": "Query the knowledge graph to find concepts matching certain criteria. Returns nodes and their connections.",
        "parameters": {
            "type": "object",
            "properties": {
                "filter": {"type": "string", "enum": QUERY_FILTERS, "description": "Filter nodes by their source dataset connections"},
                "nodeType": {"type": "string", "description": "Optional: filter by node type (concept, theme, gap, etc.)"},
                "limit": {"type": "number", "description": "Maximum number of nodes to return (default: 50)"},
            },
            "required": ["filter"],
        },
    },
    {
        "name": "get_concept_links",
        "description": "Get all source artifacts linked to a specific concept node. Shows which Dataset 1 and Dataset 2 items are connected to this concept.",
        "parameters": {
            "type": "object",
            "properties": {
                "nodeId": {"type": "string", "description": "The knowledge graph node ID (8-char prefix or full id)"},
            },
            "required": ["nodeId"],
        },
    },
    {
        "name": "write_blackboard",
        "description": "Write an entry to the blackboard to record your thinking, findings, observations, or questions. This persists your reasoning for later reference.",
        "parameters": {
            "type": "object",
            "properties": {
                "entryType": {"type": "string", "enum": BLACKBOARD_ENTRY_TYPES, "description": "The type of entry being written"},
                "content": {"type": "string", "description": "The content to write to the blackboard"},
                "confidence": {"type": "number", "description": "Confidence level from 0.0 to 1.0"},
                "targetAgent": {"type": "string", "description": "Optional: if this entry is directed at a specific perspective"},
            },
            "required": ["entryType", "content"],
        },
    },
    {
        "name": "read_blackboard",
        "description": "Read recent entries from the blackboard to understand previous reasoning and findings.",
        "parameters": {
            "type": "object",
            "properties": {
                "entryTypes": {"type": "array", "items": {"type": "string"}, "description": "Optional: filter to specific entry types"},
                "limit": {"type": "number", "description": "Maximum number of entries to return (default: 20)"},
            },
        },
    },
    {
        "name": "create_concept",
        "description": "Create a new concept node in the knowledge graph. CRITICAL: You MUST specify which source artifacts this concept relates to.",
        "parameters": {
            "type": "object",
            "properties": {
                "label": {"type": "string", "description": "Short label for the concept"},
                "description": {"type": "string", "description": "Detailed description of what this concept represents"},
                "nodeType": {
                    "type": "string",
                    "enum": ["dataset1_concept", "dataset2_concept", "shared_concept", "theme", "gap", "risk"],
                    "description": "The type of concept node",
                },
                "sourceDataset": {"type": "string", "enum": ["dataset1", "dataset2", "both"], "description": "Which dataset this concept originates from"},
                "sourceElementIds": {"type": "array", "items": {"type": "string"}, "description": "REQUIRED: ids of the source artifacts this concept represents"},
            },
            "required": ["label", "description", "nodeType", "sourceDataset", "sourceElementIds"],
        },
    },
    {
        "name": "link_concepts",
        "description": "Create an edge between two existing concept nodes in the knowledge graph.",
        "parameters": {
            "type": "object",
            "properties": {
                "sourceNodeId": {"type": "string", "description": "The source node ID (8-char prefix or full id)"},
                "targetNodeId": {"type": "string", "description": "The target node ID (8-char prefix or full id)"},
                "edgeType": {
                    "type": "string",
                    "enum": ["relates_to", "implements", "depends_on", "conflicts_with", "supports", "covers"],
                    "description": "The type of relationship between the concepts",
                },
                "label": {"type": "string", "description": "Optional: human-readable label for this edge"},
            },
            "required": ["sourceNodeId", "targetNodeId", "edgeType"],
        },
    },
    {
        "name": "record_tesseract_cell",
        "description": "Record an analysis finding for a specific Dataset 1 element. This populates the tesseract matrix showing alignment.",
        "parameters": {
            "type": "object",
            "properties": {
                "elementId": {"type": "string", "description": "The Dataset 1 element ID being analyzed"},
                "elementLabel": {"type": "string", "description": "Human-readable label for the element"},
                "step": {"type": "number", "description": "Analysis step number (1-5)"},
                "stepLabel": {"type": "string", "description": "Label for this analysis step"},
                "polarity": {"type": "number", "description": "Alignment score: -1 (gap/violation) to +1 (fully covered)"},
                "criticality": {"type": "string", "enum": ["critical", "major", "minor", "info"], "description": "Severity level"},
                "evidenceSummary": {"type": "string", "description": "Summary of evidence for this assessment"},
            },
            "required": ["elementId", "step", "polarity", "evidenceSummary"],
        },
    },
    {
        "name": "finalize_venn",
        "description": "Finalize the Venn diagram analysis, categorizing all elements into unique_to_d1, aligned, or unique_to_d2.",
        "parameters": {
            "type": "object",
            "properties": {
                "uniqueToD1": {
                    "type": "array",
                    "items": _CLASSIFIED_ITEM,
                    "description": "Elements that exist only in Dataset 1 (gaps in coverage)",
                },
                "aligned": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            **_CLASSIFIED_ITEM["properties"],
                            "sourceElement": {"type": "string"},
                            "targetElement": {"type": "string"},
                        },
                    },
                    "description": "Elements that are covered by both datasets",
                },
                "uniqueToD2": {
                    "type": "array",
                    "items": _CLASSIFIED_ITEM,
                    "description": "Elements that exist only in Dataset 2 (orphan implementations)",
                },
                "summary": {
                    "type": "object",
                    "properties": {
                        "totalD1Coverage": {"type": "number", "description": "Percentage of D1 elements covered (0-100)"},
                        "totalD2Coverage": {"type": "number", "description": "Percentage of D2 elements that map to D1 (0-100)"},
                        "alignmentScore": {"type": "number", "description": "Overall alignment score (0-100)"},
                    },
                },
            },
            "required": ["uniqueToD1", "aligned", "uniqueToD2", "summary"],
        },
    },
]

TOOL_NAMES = [tool["name"] for tool in ORCHESTRATOR_TOOLS]


def get_openai_tools() -> list[dict]:
    """Function-calling format for OpenAI-compatible chat APIs (OpenAI, Groq, xAI...)."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in ORCHESTRATOR_TOOLS
    ]


def get_anthropic_tools() -> list[dict]:
    """Tool format for the Anthropic messages API."""
    return [
        {
            "name": tool["name"],
            "description": tool["description"],
            "input_schema": tool["parameters"],
        }
        for tool in ORCHESTRATOR_TOOLS
    ]


def _as_int(value, name: str, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ToolError(f"{name} must be a number") from e


class ToolExecutor:
    """
    Executes tool calls for one session.

    Usage:
        executor = ToolExecutor(repo, ctx, {"dataset1": d1_elements, "dataset2": d2_elements})
        result = executor.execute("query_knowledge_graph", {"filter": "shared"})
    """

    def __init__(
        self,
        repo: Repository,
        ctx: RunContext,
        datasets: Optional[dict[str, list[Element]]] = None,
        agent: str = "orchestrator",
    ):
        self.repo = repo
        self.ctx = ctx
        self.agent = agent
        self.graph = GraphSynthesizer(repo, agent=agent)
        self.finalizer = VennFinalizer(repo)
        self.elements: dict[Dataset, dict[str, Element]] = {Dataset.D1: {}, Dataset.D2: {}}
        for name, elements in (datasets or {}).items():
            self.elements[Dataset.from_source(name)] = {e.id: e for e in elements}

        self._handlers = {
            "read_dataset_item": self._read_dataset_item,
            "query_knowledge_graph": self._query_knowledge_graph,
            "get_concept_links": self._get_concept_links,
            "write_blackboard": self._write_blackboard,
            "read_blackboard": self._read_blackboard,
            "create_concept": self._create_concept,
            "link_concepts": self._link_concepts,
            "record_tesseract_cell": self._record_tesseract_cell,
            "finalize_venn": self._finalize_venn,
        }
        self._required = {tool["name"]: tool["parameters"].get("required", []) for tool in ORCHESTRATOR_TOOLS}

    def execute(self, name: str, params: Optional[dict] = None) -> dict:
        """Run one tool. Raises ToolError for unknown tools and bad params."""
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolError(f"Unknown tool: {name}")
        params = params or {}
        missing = [p for p in self._required[name] if params.get(p) is None]
        if missing:
            raise ToolError(f"{name}: missing required parameter(s): {', '.join(missing)}")

        logger.info("[tools] %s %s", name, sorted(params))
        return handler(params)

    # ==================== DATASETS ====================

    def _read_dataset_item(self, params: dict) -> dict:
        try:
            dataset = Dataset.from_source(params["dataset"])
        except ValueError as e:
            raise ToolError(str(e)) from e
        element = self.elements[dataset].get(params["itemId"])
        if element is None:
            raise ToolError(f"Item {params['itemId']} not found in {dataset.source_dataset}")
        return {
            "dataset": dataset.source_dataset,
            "id": element.id,
            "label": element.label,
            "content": element.content,
            "category": element.category,
        }

    # ==================== GRAPH ====================

    def _query_knowledge_graph(self, params: dict) -> dict:
        node_filter = params["filter"]
        if node_filter not in QUERY_FILTERS:
            raise ToolError(f"Unknown filter: {node_filter}")
        limit = _as_int(params.get("limit"), "limit", 50)
        node_type = params.get("nodeType")

        nodes = self.repo.graph.get_existing_nodes_by_session(self.ctx.session_id, self.ctx.token)
        edges = self.repo.graph.get_edges_by_session(self.ctx.session_id, self.ctx.token)
        degree: dict[str, int] = {}
        for edge in edges:
            degree[edge.source_node_id] = degree.get(edge.source_node_id, 0) + 1
            degree[edge.target_node_id] = degree.get(edge.target_node_id, 0) + 1

        if node_filter == "dataset1_only":
            nodes = [n for n in nodes if n.source_dataset.value == "dataset1"]
        elif node_filter == "dataset2_only":
            nodes = [n for n in nodes if n.source_dataset.value == "dataset2"]
        elif node_filter == "shared":
            nodes = [n for n in nodes if n.source_dataset.value == "both"]
        elif node_filter == "orphans":
            nodes = [n for n in nodes if degree.get(n.id, 0) == 0]
        if node_type:
            nodes = [n for n in nodes if n.node_type.value == node_type]

        total = len(nodes)
        return {
            "total": total,
            "nodes": [dict(n.to_dict(), connections=degree.get(n.id, 0)) for n in nodes[:limit]],
        }

    def _get_concept_links(self, params: dict) -> dict:
        node = self.repo.graph.get_node(self.ctx.session_id, self.ctx.token, params["nodeId"])
        if node is None:
            raise ToolError(f"Unknown node: {params['nodeId']}")

        nodes = {n.id: n for n in self.repo.graph.get_existing_nodes_by_session(self.ctx.session_id, self.ctx.token)}
        edges = self.repo.graph.get_edges_by_session(self.ctx.session_id, self.ctx.token)

        dataset1, dataset2, related = [], [], []
        for edge in edges:
            if edge.target_node_id == node.id:
                other_id = edge.source_node_id
            elif edge.source_node_id == node.id:
                other_id = edge.target_node_id
            else:
                continue
            other = nodes.get(other_id)
            if other is None:
                continue
            link = {"nodeId": other.id, "label": other.label, "edgeType": edge.edge_type.value,
                    "elementIds": other.source_element_ids}
            if other.node_type.value == "d1_element":
                dataset1.append(link)
            elif other.node_type.value == "d2_element":
                dataset2.append(link)
            else:
                related.append(link)

        return {"node": node.to_dict(), "dataset1": dataset1, "dataset2": dataset2, "related": related}

    def _create_concept(self, params: dict) -> dict:
        ids = params["sourceElementIds"]
        if not isinstance(ids, list):
            raise ToolError("sourceElementIds must be a list")
        node, report = self.graph.create_concept(
            self.ctx,
            label=params["label"],
            description=params["description"],
            node_type=params["nodeType"],
            source_dataset=params["sourceDataset"],
            source_element_ids=[str(i) for i in ids],
        )
        return {"nodeId": node.id, "shortId": node.id[:8], "edgesCreated": report.edges_written,
                "errors": [e.model_dump() for e in report.errors]}

    def _link_concepts(self, params: dict) -> dict:
        edge = self.graph.link_concepts(
            self.ctx,
            params["sourceNodeId"],
            params["targetNodeId"],
            params["edgeType"],
            label=params.get("label"),
        )
        return {"edgeId": edge.id, "edgeType": edge.edge_type.value}

    # ==================== BLACKBOARD ====================

    def _write_blackboard(self, params: dict) -> dict:
        entry_type = params["entryType"]
        if entry_type not in BLACKBOARD_ENTRY_TYPES:
            raise ToolError(f"Unknown entry type: {entry_type}")
        try:
            entry = BlackboardEntry(
                session_id=self.ctx.session_id,
                agent_role=self.agent,
                entry_type=entry_type,
                content=params["content"],
                confidence=params.get("confidence"),
                target_agent=params.get("targetAgent"),
            )
        except ValidationError as e:
            raise ToolError(f"write_blackboard: {e}") from e
        self.repo.trail.append_blackboard(self.ctx.token, entry)
        return {"written": True, "entryType": entry_type}

    def _read_blackboard(self, params: dict) -> dict:
        entry_types = params.get("entryTypes") or None
        limit = _as_int(params.get("limit"), "limit", 20)
        entries = self.repo.trail.read_blackboard(self.ctx.session_id, self.ctx.token, entry_types, limit)
        return {
            "entries": [
                {
                    "agentRole": e.agent_role,
                    "entryType": e.entry_type,
                    "content": e.content,
                    "confidence": e.confidence,
                    "targetAgent": e.target_agent,
                    "createdAt": e.created_at.isoformat(),
                }
                for e in entries
            ]
        }

    # ==================== ANALYSIS ====================

    def _record_tesseract_cell(self, params: dict) -> dict:
        try:
            polarity = max(-1.0, min(1.0, float(params["polarity"])))
            cell = TesseractCell(
                element_id=params["elementId"],
                element_label=params.get("elementLabel") or "",
                step=int(params["step"]),
                step_label=params.get("stepLabel") or "",
                polarity=polarity,
                criticality=params.get("criticality"),
                evidence_summary=params["evidenceSummary"],
            )
        except (TypeError, ValueError) as e:
            raise ToolError(f"record_tesseract_cell: {e}") from e
        if cell.element_id not in self.elements[Dataset.D1] and self.elements[Dataset.D1]:
            raise ToolError(f"Unknown Dataset 1 element: {cell.element_id}")
        self.repo.trail.save_tesseract_cell(self.ctx.session_id, self.ctx.token, cell)
        return {"recorded": True, "elementId": cell.element_id, "step": cell.step}

    def _finalize_venn(self, params: dict) -> dict:
        result = self.finalizer.finalize_manual(params)
        self.repo.trail.save_venn_result(self.ctx.session_id, self.ctx.token, result)
        return {
            "finalized": True,
            "uniqueToD1": len(result.unique_to_d1),
            "aligned": len(result.aligned),
            "uniqueToD2": len(result.unique_to_d2),
            "summary": result.summary.model_dump(by_alias=True),
        }
