"""
Run context - the explicit state every stage receives.

Holds the session identity, the cooperative abort flag, and the progress
sink. Nothing about a run lives in module globals.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from models import ProgressEvent

from .errors import PipelineAborted

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


@dataclass
class RunContext:
    """State for one pipeline run."""
    session_id: str
    token: str = ""
    project_id: str = ""
    abort_requested: bool = False
    progress_sink: Optional[ProgressSink] = None
    events: list[ProgressEvent] = field(default_factory=list)

    def request_abort(self) -> None:
        """Ask the run to stop at the next stage boundary."""
        self.abort_requested = True

    def check_abort(self) -> None:
        """Raise PipelineAborted if cancellation was requested."""
        if self.abort_requested:
            raise PipelineAborted()

    def report(self, event: ProgressEvent) -> None:
        """Record an event and forward it to the sink. Sink errors never stop the run."""
        self.events.append(event)
        if self.progress_sink is None:
            return
        try:
            self.progress_sink(event)
        except Exception as e:
            logger.error("[%s] Progress sink error: %s", self.session_id[:8], e)
