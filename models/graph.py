"""
Traceability graph - element and concept nodes, provenance edges,
and the per-write report collected while building them.
"""

import uuid
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

from .base import BaseEntity


class NodeType(str, Enum):
    """Kind of graph node."""
    D1_ELEMENT = "d1_element"
    D2_ELEMENT = "d2_element"
    CONCEPT = "concept"
    # Agent-created node kinds
    DATASET1_CONCEPT = "dataset1_concept"
    DATASET2_CONCEPT = "dataset2_concept"
    SHARED_CONCEPT = "shared_concept"
    THEME = "theme"
    GAP = "gap"
    RISK = "risk"

    @property
    def is_element(self) -> bool:
        return self in (NodeType.D1_ELEMENT, NodeType.D2_ELEMENT)


class SourceDataset(str, Enum):
    """Which dataset(s) a node derives from."""
    DATASET1 = "dataset1"
    DATASET2 = "dataset2"
    BOTH = "both"


class EdgeType(str, Enum):
    """Relationship carried by an edge."""
    DEFINES = "defines"          # D1 element -> concept
    IMPLEMENTS = "implements"    # D2 element -> concept (also concept -> concept)
    RELATES_TO = "relates_to"
    DEPENDS_ON = "depends_on"
    CONFLICTS_WITH = "conflicts_with"
    SUPPORTS = "supports"
    COVERS = "covers"


class GraphNode(BaseEntity):
    """
    A node in a session's traceability graph.

    Element nodes carry a single element id; concept nodes carry the union
    of their contributing element ids.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    label: str
    description: str = ""
    node_type: NodeType
    source_dataset: SourceDataset
    source_element_ids: list[str] = Field(default_factory=list)
    color: Optional[str] = None
    size: int = 15
    created_by_agent: str = "pipeline"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def upsert_key(self) -> tuple:
        """Identity for idempotent upsert within a session."""
        return (self.session_id, self.node_type.value, tuple(sorted(self.source_element_ids)))

    def matches_id(self, node_id: str) -> bool:
        """Full id or an 8+ char prefix of it."""
        if not node_id:
            return False
        return self.id == node_id or (len(node_id) >= 8 and self.id.startswith(node_id))

    def to_dict(self) -> dict:
        """camelCase export for API and tool responses."""
        return {
            "id": self.id,
            "shortId": self.id[:8],
            "label": self.label,
            "description": self.description,
            "nodeType": self.node_type.value,
            "sourceDataset": self.source_dataset.value,
            "sourceElementIds": self.source_element_ids,
            "color": self.color,
            "size": self.size,
            "createdByAgent": self.created_by_agent,
            "metadata": self.metadata,
        }


class GraphEdge(BaseEntity):
    """An edge from an element node to a concept node (or between concepts)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    source_node_id: str
    target_node_id: str
    edge_type: EdgeType
    label: str = ""
    weight: float = 1.0
    created_by_agent: str = "pipeline"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source_node_id,
            "target": self.target_node_id,
            "edgeType": self.edge_type.value,
            "label": self.label,
            "weight": self.weight,
        }


class GraphWriteError(BaseModel):
    """One failed node or edge write."""
    operation: str  # "upsert_element_node", "insert_edge", ...
    target: str     # Label or id of what we tried to write
    message: str


class GraphWriteReport(BaseModel):
    """Outcome of a batch of best-effort graph writes."""
    nodes_written: int = 0
    edges_written: int = 0
    errors: list[GraphWriteError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, operation: str, target: str, error: Exception) -> None:
        self.errors.append(GraphWriteError(operation=operation, target=target, message=str(error)))

    def extend(self, other: "GraphWriteReport") -> None:
        self.nodes_written += other.nodes_written
        self.edges_written += other.edges_written
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return {
            "nodesWritten": self.nodes_written,
            "edgesWritten": self.edges_written,
            "errorCount": len(self.errors),
            "errors": [e.model_dump() for e in self.errors[:20]],
        }
