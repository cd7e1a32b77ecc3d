"""
Repository layer - abstracts persistence.

Usage:
    from repositories import get_repository

    repo = get_repository()  # Returns configured backend
    repo.graph.upsert_element_node(session_id, token, node)
    repo.sessions.update_status(session_id, token, SessionStatus.RUNNING, "extracting")

Backends are swappable via config.
"""

from typing import Optional

from .base import Repository
from .json_backend import JsonRepository
from .memory_backend import MemoryRepository

# Default backend - can be changed via config
_backend: str = "json"
_backend_kwargs: dict = {}
_instance: Optional[Repository] = None


def get_repository() -> Repository:
    """Get the configured repository instance."""
    global _instance

    if _instance is None:
        if _backend == "json":
            _instance = JsonRepository(**_backend_kwargs)
        elif _backend == "memory":
            _instance = MemoryRepository()
        else:
            raise ValueError(f"Unknown backend: {_backend}")

    return _instance


def configure_backend(backend: str, **kwargs) -> None:
    """Configure the repository backend."""
    global _backend, _backend_kwargs, _instance
    _backend = backend
    _backend_kwargs = kwargs
    _instance = None  # Force re-initialization


__all__ = ["get_repository", "configure_backend", "Repository", "JsonRepository", "MemoryRepository"]
