"""
Models for the optional trace-based slimming pass.
"""
from typing import List
from pydantic import BaseModel, Field


class SlimmingPolicy(BaseModel):
    """
    How the runtime image is traced and reduced.

    Only paths exercised during the observation window are guaranteed to
    survive slimming.
    """
    enabled: bool = True
    tool: str = "slim"
    observation_window: int = Field(default=30, gt=0, le=3600)
    grace_period: int = Field(default=300, ge=0)
    http_probe: bool = False
    continue_after_trace: bool = True
    fallback_to_unslimmed: bool = False
    extra_args: List[str] = []

    @property
    def timeout(self) -> int:
        """Hard bound on the whole slimming invocation, in seconds."""
        return self.observation_window + self.grace_period
