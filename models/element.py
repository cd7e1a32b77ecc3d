"""
Element - an atomic input artifact from one of the two datasets.
"""

from enum import Enum
from typing import Optional

from .base import WireModel


class Dataset(str, Enum):
    """Which side of the audit an element comes from."""
    D1 = "d1"  # Requirements / specifications
    D2 = "d2"  # Implementation artifacts

    @property
    def source_dataset(self) -> str:
        return "dataset1" if self is Dataset.D1 else "dataset2"

    @property
    def node_type(self) -> str:
        return "d1_element" if self is Dataset.D1 else "d2_element"

    @property
    def edge_type(self) -> str:
        """Provenance tag for element -> concept edges."""
        return "defines" if self is Dataset.D1 else "implements"

    @property
    def display_label(self) -> str:
        return "D1 (requirements)" if self is Dataset.D1 else "D2 (implementation)"

    @property
    def context(self) -> str:
        """What kind of artifacts this side holds, for prompts."""
        if self is Dataset.D1:
            return "requirements, specifications, or source of truth items"
        return "implementation artifacts like code files, configurations, or deliverables"

    @classmethod
    def from_source(cls, value: str) -> "Dataset":
        """Accept 'd1' / 'dataset1' style names."""
        normalized = value.strip().lower()
        if normalized in ("d1", "dataset1"):
            return cls.D1
        if normalized in ("d2", "dataset2"):
            return cls.D2
        raise ValueError(f"Unknown dataset: {value}")


class Element(WireModel):
    """
    An immutable input item.

    Owned by the element store; the pipeline never mutates one.
    """
    id: str
    label: str
    content: str = ""
    category: Optional[str] = None

    def truncated_content(self, limit: int) -> str:
        """Content cut to `limit` chars, with a marker when cut."""
        content = self.content or ""
        if len(content) > limit:
            return content[:limit] + "..."
        return content
