"""
JSON file backend - stores each session as JSON/JSONL files.

Directory structure:
    sessions/{session_id}/
        session.json      - Session status and phase
        nodes.json        - Graph nodes (rewritten on upsert)
        edges.jsonl       - Graph edges (append-only)
        merge_log.jsonl   - Merge log entries
        blackboard.jsonl  - Blackboard entries
        activity.jsonl    - Activity stream
        tesseract.json    - Tesseract cells keyed by element/step
        venn.json         - Latest Venn result
"""

import json
import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

from config import SESSIONS_DIR
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

logger = logging.getLogger(__name__)


class WriteQueue:
    """Thread-safe write serialization."""

    def __init__(self):
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Held across read-modify-write cycles."""
        return self._lock

    def write_json(self, path: Path, data) -> None:
        """Atomic JSON write."""
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp = path.with_suffix(".json.tmp")
            with open(temp, "w") as f:
                json.dump(data, f, indent=2, default=str)
            temp.replace(path)

    def append_jsonl(self, path: Path, data: dict) -> None:
        """Append to JSONL file."""
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(json.dumps(data, default=str) + "\n")


_write_queue = WriteQueue()


def _read_json(path: Path, default):
    if not path.exists():
        return default
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("[WARN] Corrupt %s: %s", path, e)
        return default


def _iter_jsonl(path: Path) -> Iterator[dict]:
    if not path.exists():
        return
    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("[WARN] Corrupt line %d in %s: %s", line_num, path, e)


class _SessionFiles:
    """Path helpers shared by the sub-repositories."""

    def __init__(self, base_path: Path):
        self._base_path = base_path

    def _session_dir(self, session_id: str) -> Path:
        return self._base_path / session_id

    def _file(self, session_id: str, name: str) -> Path:
        return self._session_dir(session_id) / name


class JsonSessionRepository(SessionRepository, _SessionFiles):
    """JSON file implementation of session repository."""

    def create(self, session: AuditSession) -> AuditSession:
        _write_queue.write_json(self._file(session.id, "session.json"), session.model_dump(mode="json"))
        return session

    def get(self, session_id: str) -> Optional[AuditSession]:
        data = _read_json(self._file(session_id, "session.json"), None)
        if data is None:
            return None
        return AuditSession.model_validate(data)

    def update_status(self, session_id, token, status, phase=None, error=None) -> None:
        with _write_queue.lock:
            session = self.check_access(session_id, token)
            session.status = SessionStatus(status)
            if phase is not None:
                session.phase = phase
            if error is not None:
                session.error = error
            session.touch()
            _write_queue.write_json(self._file(session_id, "session.json"), session.model_dump(mode="json"))


class JsonGraphRepository(GraphRepository, _SessionFiles):
    """JSON file implementation of graph repository."""

    def __init__(self, base_path: Path, sessions: SessionRepository):
        super().__init__(base_path)
        self._sessions = sessions

    def _load_nodes(self, session_id: str) -> list[GraphNode]:
        data = _read_json(self._file(session_id, "nodes.json"), [])
        return [GraphNode.model_validate(n) for n in data]

    def _save_nodes(self, session_id: str, nodes: list[GraphNode]) -> None:
        _write_queue.write_json(
            self._file(session_id, "nodes.json"),
            [n.model_dump(mode="json") for n in nodes],
        )

    def upsert_element_node(self, session_id, token, node) -> GraphNode:
        self._sessions.check_access(session_id, token)
        with _write_queue.lock:
            nodes = self._load_nodes(session_id)
            existing = find_upsert_match(nodes, node)
            if existing:
                return existing
            nodes.append(node)
            self._save_nodes(session_id, nodes)
            return node

    def upsert_concept_node(self, session_id, token, node) -> GraphNode:
        self._sessions.check_access(session_id, token)
        with _write_queue.lock:
            nodes = self._load_nodes(session_id)
            existing = find_upsert_match(nodes, node)
            if existing:
                existing.label = node.label
                existing.description = node.description
                existing.color = node.color
                existing.size = node.size
                existing.metadata = node.metadata
                existing.touch()
                self._save_nodes(session_id, nodes)
                return existing
            nodes.append(node)
            self._save_nodes(session_id, nodes)
            return node

    def insert_edge(self, session_id, token, edge) -> GraphEdge:
        self._sessions.check_access(session_id, token)
        _write_queue.append_jsonl(self._file(session_id, "edges.jsonl"), edge.model_dump(mode="json"))
        return edge

    def get_existing_nodes_by_session(self, session_id, token) -> list[GraphNode]:
        self._sessions.check_access(session_id, token)
        return self._load_nodes(session_id)

    def get_edges_by_session(self, session_id, token) -> list[GraphEdge]:
        self._sessions.check_access(session_id, token)
        return [GraphEdge.model_validate(e) for e in _iter_jsonl(self._file(session_id, "edges.jsonl"))]


class JsonTrailRepository(TrailRepository, _SessionFiles):
    """JSON file implementation of the audit trail."""

    def __init__(self, base_path: Path, sessions: SessionRepository):
        super().__init__(base_path)
        self._sessions = sessions

    def record_merge_log(self, session_id, token, round, entries: list[MergeLogEntry]) -> None:
        self._sessions.check_access(session_id, token)
        path = self._file(session_id, "merge_log.jsonl")
        for entry in entries:
            _write_queue.append_jsonl(path, {"round": round, **entry.model_dump(by_alias=True)})

    def get_merge_log(self, session_id, token) -> list[dict]:
        self._sessions.check_access(session_id, token)
        return list(_iter_jsonl(self._file(session_id, "merge_log.jsonl")))

    def append_blackboard(self, token, entry) -> None:
        self._sessions.check_access(entry.session_id, token)
        _write_queue.append_jsonl(self._file(entry.session_id, "blackboard.jsonl"), entry.model_dump(mode="json"))

    def read_blackboard(self, session_id, token, entry_types=None, limit=20) -> list[BlackboardEntry]:
        self._sessions.check_access(session_id, token)
        entries = [BlackboardEntry.model_validate(e) for e in _iter_jsonl(self._file(session_id, "blackboard.jsonl"))]
        entries = [e for e in reversed(entries) if not entry_types or e.entry_type in entry_types]
        return entries[:limit]

    def append_activity(self, token, entry) -> None:
        self._sessions.check_access(entry.session_id, token)
        _write_queue.append_jsonl(self._file(entry.session_id, "activity.jsonl"), entry.model_dump(mode="json"))

    def get_activity(self, session_id, token) -> list[ActivityEntry]:
        self._sessions.check_access(session_id, token)
        return [ActivityEntry.model_validate(e) for e in _iter_jsonl(self._file(session_id, "activity.jsonl"))]

    def save_tesseract_cell(self, session_id, token, cell) -> None:
        self._sessions.check_access(session_id, token)
        path = self._file(session_id, "tesseract.json")
        with _write_queue.lock:
            cells = _read_json(path, {})
            cells[f"{cell.element_id}::{cell.step}"] = cell.model_dump(mode="json")
            _write_queue.write_json(path, cells)

    def get_tesseract_cells(self, session_id, token) -> list[TesseractCell]:
        self._sessions.check_access(session_id, token)
        cells = _read_json(self._file(session_id, "tesseract.json"), {})
        return [TesseractCell.model_validate(c) for c in cells.values()]

    def save_venn_result(self, session_id, token, result) -> None:
        self._sessions.check_access(session_id, token)
        _write_queue.write_json(self._file(session_id, "venn.json"), result.model_dump(mode="json", by_alias=True))

    def get_venn_result(self, session_id, token) -> Optional[VennResult]:
        self._sessions.check_access(session_id, token)
        data = _read_json(self._file(session_id, "venn.json"), None)
        if data is None:
            return None
        return VennResult.model_validate(data)


class JsonRepository(Repository):
    """JSON file backend implementation."""

    def __init__(self, base_path: Path = None):
        self._base_path = Path(base_path or SESSIONS_DIR)
        self._sessions = JsonSessionRepository(self._base_path)
        self._graph = JsonGraphRepository(self._base_path, self._sessions)
        self._trail = JsonTrailRepository(self._base_path, self._sessions)

    @property
    def sessions(self) -> SessionRepository:
        return self._sessions

    @property
    def graph(self) -> GraphRepository:
        return self._graph

    @property
    def trail(self) -> TrailRepository:
        return self._trail
