"""
Unit test fixtures.

All unit tests should be:
- Fast (< 100ms)
- Isolated (in-memory repository, scripted model output)
- Deterministic (same result every time)
"""

import pytest

from audit import RunContext
from models import AuditSession
from repositories import MemoryRepository


@pytest.fixture
def repo():
    """In-memory repository with one open session."""
    repository = MemoryRepository()
    repository.sessions.create(AuditSession(id="session-1", project_id="project-1"))
    return repository


@pytest.fixture
def ctx():
    """Run context for session-1."""
    return RunContext(session_id="session-1", project_id="project-1")
