"""
Models for the pipeline state machine and the record of a single run.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Set
from pydantic import BaseModel, Field


class PipelineState(str, Enum):
    """
    States of a pipeline run. DONE and FAILED are terminal.
    """
    PENDING = "pending"
    BUILDING = "building"
    RESOLVING = "resolving"
    ASSEMBLING = "assembling"
    SLIMMING = "slimming"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


_ALLOWED: Dict[PipelineState, Set[PipelineState]] = {
    PipelineState.PENDING: {PipelineState.BUILDING, PipelineState.FAILED},
    PipelineState.BUILDING: {PipelineState.RESOLVING, PipelineState.FAILED},
    PipelineState.RESOLVING: {PipelineState.ASSEMBLING, PipelineState.FAILED},
    PipelineState.ASSEMBLING: {PipelineState.SLIMMING, PipelineState.PUBLISHING, PipelineState.FAILED},
    PipelineState.SLIMMING: {PipelineState.PUBLISHING, PipelineState.FAILED},
    PipelineState.PUBLISHING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Transition(BaseModel):
    """
    A recorded state change.
    """
    state: PipelineState
    at: str = Field(default_factory=_utcnow)


class PipelineRun(BaseModel):
    """
    The observable outcome of one pipeline invocation.
    """
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: PipelineState = PipelineState.PENDING
    history: List[Transition] = Field(default_factory=lambda: [Transition(state=PipelineState.PENDING)])
    skipped: bool = False

    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    image: Optional[str] = None
    digest: Optional[str] = None

    def transition(self, new_state: PipelineState) -> None:
        """
        Moves the run to ``new_state``.

        :raises ValueError: If the transition is not allowed from the current state.
        """
        if new_state not in _ALLOWED[self.state]:
            raise ValueError(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(Transition(state=new_state))

    def fail(self, kind: str, message: str) -> None:
        self.transition(PipelineState.FAILED)
        self.error_kind = kind
        self.error_message = message

    @property
    def states(self) -> List[PipelineState]:
        return [t.state for t in self.history]

    @property
    def summary(self) -> str:
        if self.skipped:
            return "Skipped"
        if self.state == PipelineState.FAILED:
            return f"Failed: {self.error_kind}"
        if self.state == PipelineState.DONE:
            return "Done"
        return self.state.value.capitalize()
