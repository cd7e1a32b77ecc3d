"""
Repository base classes - define the persistence boundary.

Every call is keyed by a session id and an access token. Backends decide
what the token means; the bundled ones only check it against the session's
share token when one was set.
"""

from abc import ABC, abstractmethod
from typing import Optional

from models import (
    ActivityEntry,
    AuditSession,
    BlackboardEntry,
    GraphEdge,
    GraphNode,
    MergeLogEntry,
    SessionStatus,
    TesseractCell,
    VennResult,
)


def find_upsert_match(nodes: list[GraphNode], candidate: GraphNode) -> Optional[GraphNode]:
    """Existing node with the same (session, node type, element id set), if any."""
    key = candidate.upsert_key
    for node in nodes:
        if node.upsert_key == key:
            return node
    return None


class SessionRepository(ABC):
    """Repository for audit sessions."""

    @abstractmethod
    def create(self, session: AuditSession) -> AuditSession:
        """Create (or replace) a session."""
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[AuditSession]:
        """Get session by id."""
        pass

    @abstractmethod
    def update_status(
        self,
        session_id: str,
        token: str,
        status: SessionStatus,
        phase: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Set status (and optionally phase / error message)."""
        pass

    def check_access(self, session_id: str, token: str) -> AuditSession:
        """Resolve the session, rejecting unknown ids and wrong share tokens."""
        session = self.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        if session.share_token and token != session.share_token:
            raise PermissionError(f"Invalid token for session {session_id}")
        return session


class GraphRepository(ABC):
    """Repository for traceability graph nodes and edges."""

    @abstractmethod
    def upsert_element_node(self, session_id: str, token: str, node: GraphNode) -> GraphNode:
        """Insert an element node, or return the one already holding these element ids."""
        pass

    @abstractmethod
    def upsert_concept_node(self, session_id: str, token: str, node: GraphNode) -> GraphNode:
        """Insert a concept node, or refresh the one already holding these element ids."""
        pass

    @abstractmethod
    def insert_edge(self, session_id: str, token: str, edge: GraphEdge) -> GraphEdge:
        """Append an edge. Never deduplicated."""
        pass

    @abstractmethod
    def get_existing_nodes_by_session(self, session_id: str, token: str) -> list[GraphNode]:
        """All nodes of a session, in insertion order."""
        pass

    @abstractmethod
    def get_edges_by_session(self, session_id: str, token: str) -> list[GraphEdge]:
        """All edges of a session, in insertion order."""
        pass

    def get_node(self, session_id: str, token: str, node_id: str) -> Optional[GraphNode]:
        """Node by full id or 8-char prefix."""
        for node in self.get_existing_nodes_by_session(session_id, token):
            if node.matches_id(node_id):
                return node
        return None


class TrailRepository(ABC):
    """Repository for the audit trail and analysis artifacts."""

    @abstractmethod
    def record_merge_log(self, session_id: str, token: str, round: int, entries: list[MergeLogEntry]) -> None:
        """Append merge log entries for a round."""
        pass

    @abstractmethod
    def get_merge_log(self, session_id: str, token: str) -> list[dict]:
        """Merge log as [{round, from, to}]."""
        pass

    @abstractmethod
    def append_blackboard(self, token: str, entry: BlackboardEntry) -> None:
        """Append a blackboard entry."""
        pass

    @abstractmethod
    def read_blackboard(
        self,
        session_id: str,
        token: str,
        entry_types: Optional[list[str]] = None,
        limit: int = 20,
    ) -> list[BlackboardEntry]:
        """Most recent entries first, optionally filtered by type."""
        pass

    @abstractmethod
    def append_activity(self, token: str, entry: ActivityEntry) -> None:
        """Append an activity-stream record."""
        pass

    @abstractmethod
    def get_activity(self, session_id: str, token: str) -> list[ActivityEntry]:
        """Activity stream in insertion order."""
        pass

    @abstractmethod
    def save_tesseract_cell(self, session_id: str, token: str, cell: TesseractCell) -> None:
        """Store a cell, replacing any previous (element, step) cell."""
        pass

    @abstractmethod
    def get_tesseract_cells(self, session_id: str, token: str) -> list[TesseractCell]:
        """All cells of a session."""
        pass

    @abstractmethod
    def save_venn_result(self, session_id: str, token: str, result: VennResult) -> None:
        """Store the Venn result, superseding earlier runs."""
        pass

    @abstractmethod
    def get_venn_result(self, session_id: str, token: str) -> Optional[VennResult]:
        """Latest Venn result, if any."""
        pass


class Repository:
    """
    Aggregate repository - provides access to all sub-repositories.

    This is what the pipeline uses. Backend implementations provide
    concrete versions of each sub-repository.
    """

    @property
    @abstractmethod
    def sessions(self) -> SessionRepository:
        """Access session repository."""
        pass

    @property
    @abstractmethod
    def graph(self) -> GraphRepository:
        """Access graph repository."""
        pass

    @property
    @abstractmethod
    def trail(self) -> TrailRepository:
        """Access audit-trail repository."""
        pass
