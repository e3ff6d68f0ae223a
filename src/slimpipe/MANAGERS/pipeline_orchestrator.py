# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration of one pipeline run: Build, Assembly, (Slimming), Publish.
"""
import tempfile
from typing import Optional, List

from ..BUILDERS.build_stage import BuildStage
from ..BUILDERS.image_assembler import ImageAssembler
from ..MODELS.pipeline_config import PipelineConfig, TriggerEvent
from ..MODELS.pipeline_run import PipelineRun, PipelineState
from ..MODELS.publish_target import RegistryCredential
from ..MODELS.runtime_image import RuntimeImage
from ..REGISTRY.publisher import Publisher
from ..RUNNERS.container_engine import ContainerEngine, EngineError
from ..RUNNERS.dependency_resolver import DependencyResolver, probe_base
from ..RUNNERS.slim_runner import SlimRunner
from ..UTILS.log_config import get_logger, bind_run, clear_run
from ..errors import (
    PipelineError, CompileError, UnresolvedDependencyError, AssemblyError, SlimmingError, PushError,
)

# Error kind reported when an engine call fails outside a stage's own checks
STAGE_ERRORS = {
    PipelineState.PENDING: CompileError,
    PipelineState.BUILDING: CompileError,
    PipelineState.RESOLVING: UnresolvedDependencyError,
    PipelineState.ASSEMBLING: AssemblyError,
    PipelineState.SLIMMING: SlimmingError,
    PipelineState.PUBLISHING: PushError,
}


class PipelineOrchestrator:
    """
    Runs the stages of a pipeline strictly in sequence.

    Each run gets its own staging directory and its own image tags; no
    mutable state is shared between runs. Every PipelineError is fatal and
    nothing is retried.
    """
    def __init__(self,
                 config: PipelineConfig,
                 engine: Optional[ContainerEngine] = None,
                 work_dir: Optional[str] = None,
                 resolver: Optional[DependencyResolver] = None,
                 keep_images: bool = False):
        """
        Initializes the orchestrator.

        :param config: Configuration of the pipeline.
        :param engine: Container engine; defaults to the ``docker`` CLI.
        :param work_dir: Parent directory for run staging directories.
        :param resolver: Dependency resolver; defaults to the ELF reader.
        :param keep_images: Keep intermediate local images after the run.
        """
        self.config = config
        self.engine = engine or ContainerEngine()
        self.work_dir = work_dir
        self.resolver = resolver or DependencyResolver()
        self.keep_images = keep_images
        self.log = get_logger(__name__, stage="pipeline")

    def run(self, credential: RegistryCredential, event: Optional[TriggerEvent] = None) -> PipelineRun:
        """
        Executes one pipeline run.

        :param credential: Registry credential for this run only.
        :param event: What triggered the run; manual dispatch if omitted.
        :return: The run record with its terminal state and error kind.
        """
        event = event or TriggerEvent()
        run = PipelineRun()
        bind_run(run.run_id)
        try:
            if not self.config.triggers.accepts(event):
                run.skipped = True
                self.log.info("pipeline.skipped", trigger=event.kind.value, ref=event.ref)
                return run

            self.log.info("pipeline.start", name=self.config.name, trigger=event.kind.value)
            intermediate: List[str] = []
            try:
                self._execute(run, credential, intermediate)
            except (EngineError, OSError) as e:
                error = STAGE_ERRORS[run.state](f"{run.state.value} failed: {e}")
                run.fail(error.kind, error.message)
                self.log.error("pipeline.failed", error_kind=error.kind, error=error.message,
                               state=run.history[-2].state.value)
            except PipelineError as e:
                run.fail(e.kind, e.message)
                self.log.error("pipeline.failed", error_kind=e.kind, error=e.message,
                               state=run.history[-2].state.value)
            finally:
                if not self.keep_images:
                    self._cleanup(intermediate)

            self.log.info("pipeline.finished", result=run.summary)
            return run
        finally:
            clear_run()

    def _execute(self, run: PipelineRun, credential: RegistryCredential, intermediate: List[str]):
        config = self.config
        with tempfile.TemporaryDirectory(prefix=f"slimpipe-{run.run_id}-", dir=self.work_dir) as staging:
            run.transition(PipelineState.BUILDING)
            artifact = BuildStage(self.engine, staging, run.run_id).run(config.build)

            run.transition(PipelineState.RESOLVING)
            inventory = probe_base(self.engine, config.runtime.base_image)
            deps = self.resolver.resolve(artifact, inventory)

            run.transition(PipelineState.ASSEMBLING)
            local_tag = f"slimpipe-{config.name.lower()}:{run.run_id}"
            intermediate.append(local_tag)
            image = ImageAssembler(self.engine, staging).assemble(
                artifact, deps, config.runtime, inventory, local_tag)

        if config.slimming.enabled:
            run.transition(PipelineState.SLIMMING)
            image = self._slim(image, run, intermediate)

        run.transition(PipelineState.PUBLISHING)
        target = config.publish.target(credential)
        result = Publisher(self.engine).publish(image, target)
        run.image = result.reference
        run.digest = result.digest
        run.transition(PipelineState.DONE)

    def _slim(self, image: RuntimeImage, run: PipelineRun, intermediate: List[str]) -> RuntimeImage:
        policy = self.config.slimming
        slim_tag = f"slimpipe-{self.config.name.lower()}:{run.run_id}-slim"
        intermediate.append(slim_tag)
        try:
            return SlimRunner(self.engine, policy).slim(
                image, slim_tag, smoke_command=self.config.runtime.smoke_command or None)
        except SlimmingError as e:
            if not policy.fallback_to_unslimmed:
                raise
            self.log.warning("pipeline.slimming_fallback", error=e.message, image=image.reference)
            return image

    def _cleanup(self, tags: List[str]):
        for tag in tags:
            self.engine.remove_image(tag)
