"""
In-memory backend - everything lives in dicts for the process lifetime.

Used by tests and by callers that embed the pipeline and persist results
themselves.
"""

import threading
from collections import defaultdict
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
from .base import (
    Repository,
    SessionRepository,
    GraphRepository,
    TrailRepository,
    find_upsert_match,
)


class MemorySessionRepository(SessionRepository):
    """Sessions keyed by id."""

    def __init__(self):
        self._sessions: dict[str, AuditSession] = {}

    def create(self, session: AuditSession) -> AuditSession:
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[AuditSession]:
        return self._sessions.get(session_id)

    def update_status(self, session_id, token, status, phase=None, error=None) -> None:
        session = self.check_access(session_id, token)
        session.status = SessionStatus(status)
        if phase is not None:
            session.phase = phase
        if error is not None:
            session.error = error
        session.touch()


class MemoryGraphRepository(GraphRepository):
    """Nodes and edges per session, guarded by one lock."""

    def __init__(self, sessions: SessionRepository):
        self._sessions = sessions
        self._nodes: dict[str, list[GraphNode]] = defaultdict(list)
        self._edges: dict[str, list[GraphEdge]] = defaultdict(list)
        self._lock = threading.Lock()

    def upsert_element_node(self, session_id, token, node) -> GraphNode:
        self._sessions.check_access(session_id, token)
        with self._lock:
            existing = find_upsert_match(self._nodes[session_id], node)
            if existing:
                return existing
            self._nodes[session_id].append(node)
            return node

    def upsert_concept_node(self, session_id, token, node) -> GraphNode:
        self._sessions.check_access(session_id, token)
        with self._lock:
            existing = find_upsert_match(self._nodes[session_id], node)
            if existing:
                existing.label = node.label
                existing.description = node.description
                existing.color = node.color
                existing.size = node.size
                existing.metadata = node.metadata
                existing.touch()
                return existing
            self._nodes[session_id].append(node)
            return node

    def insert_edge(self, session_id, token, edge) -> GraphEdge:
        self._sessions.check_access(session_id, token)
        with self._lock:
            self._edges[session_id].append(edge)
        return edge

    def get_existing_nodes_by_session(self, session_id, token) -> list[GraphNode]:
        self._sessions.check_access(session_id, token)
        return list(self._nodes[session_id])

    def get_edges_by_session(self, session_id, token) -> list[GraphEdge]:
        self._sessions.check_access(session_id, token)
        return list(self._edges[session_id])


class MemoryTrailRepository(TrailRepository):
    """Merge log, blackboard, activity, tesseract and Venn per session."""

    def __init__(self, sessions: SessionRepository):
        self._sessions = sessions
        self._merge_log: dict[str, list[dict]] = defaultdict(list)
        self._blackboard: dict[str, list[BlackboardEntry]] = defaultdict(list)
        self._activity: dict[str, list[ActivityEntry]] = defaultdict(list)
        self._cells: dict[str, dict[tuple, TesseractCell]] = defaultdict(dict)
        self._venn: dict[str, VennResult] = {}

    def record_merge_log(self, session_id, token, round, entries: list[MergeLogEntry]) -> None:
        self._sessions.check_access(session_id, token)
        for entry in entries:
            self._merge_log[session_id].append(
                {"round": round, **entry.model_dump(by_alias=True)}
            )

    def get_merge_log(self, session_id, token) -> list[dict]:
        self._sessions.check_access(session_id, token)
        return list(self._merge_log[session_id])

    def append_blackboard(self, token, entry) -> None:
        self._sessions.check_access(entry.session_id, token)
        self._blackboard[entry.session_id].append(entry)

    def read_blackboard(self, session_id, token, entry_types=None, limit=20) -> list[BlackboardEntry]:
        self._sessions.check_access(session_id, token)
        entries = [
            e for e in reversed(self._blackboard[session_id])
            if not entry_types or e.entry_type in entry_types
        ]
        return entries[:limit]

    def append_activity(self, token, entry) -> None:
        self._sessions.check_access(entry.session_id, token)
        self._activity[entry.session_id].append(entry)

    def get_activity(self, session_id, token) -> list[ActivityEntry]:
        self._sessions.check_access(session_id, token)
        return list(self._activity[session_id])

    def save_tesseract_cell(self, session_id, token, cell) -> None:
        self._sessions.check_access(session_id, token)
        self._cells[session_id][(cell.element_id, cell.step)] = cell

    def get_tesseract_cells(self, session_id, token) -> list[TesseractCell]:
        self._sessions.check_access(session_id, token)
        return list(self._cells[session_id].values())

    def save_venn_result(self, session_id, token, result) -> None:
        self._sessions.check_access(session_id, token)
        self._venn[session_id] = result

    def get_venn_result(self, session_id, token) -> Optional[VennResult]:
        self._sessions.check_access(session_id, token)
        return self._venn.get(session_id)


class MemoryRepository(Repository):
    """In-memory aggregate repository."""

    def __init__(self):
        self._sessions = MemorySessionRepository()
        self._graph = MemoryGraphRepository(self._sessions)
        self._trail = MemoryTrailRepository(self._sessions)

    @property
    def sessions(self) -> MemorySessionRepository:
        return self._sessions

    @property
    def graph(self) -> MemoryGraphRepository:
        return self._graph

    @property
    def trail(self) -> MemoryTrailRepository:
        return self._trail
