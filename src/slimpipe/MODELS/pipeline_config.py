"""
Models for the overall pipeline configuration and its triggers.
"""
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field

from .build_spec import BuildSpec
from .runtime_image import RuntimeSpec
from .slimming_policy import SlimmingPolicy
from .publish_target import PublishSettings


class TriggerKind(str, Enum):
    """
    What started a pipeline run.
    """
    PUSH = "push"
    MANUAL = "manual"


class TriggerEvent(BaseModel):
    """
    A single trigger, e.g. a push to ``refs/heads/main`` or a manual dispatch.
    """
    kind: TriggerKind = TriggerKind.MANUAL
    ref: Optional[str] = None

    @property
    def branch(self) -> Optional[str]:
        if not self.ref:
            return None
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref


class TriggerPolicy(BaseModel):
    """
    Which events are allowed to start a run.
    """
    default_branch: str = "main"
    allow_manual: bool = True

    def accepts(self, event: TriggerEvent) -> bool:
        if event.kind == TriggerKind.MANUAL:
            return self.allow_manual
        return event.branch == self.default_branch


class PipelineConfig(BaseModel):
    """
    Complete configuration for one build-assemble-slim-publish pipeline.
    """
    build: BuildSpec
    runtime: RuntimeSpec
    slimming: SlimmingPolicy = Field(default_factory=SlimmingPolicy)
    publish: PublishSettings
    triggers: TriggerPolicy = Field(default_factory=TriggerPolicy)

    @property
    def name(self) -> str:
        return self.build.name
