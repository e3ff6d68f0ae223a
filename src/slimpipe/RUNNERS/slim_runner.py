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
Slimming Stage: traces a runtime image for a bounded window with an external
slimming tool and keeps only what was observed in use.

Only execution paths exercised during the window are preserved; anything the
trace did not reach may be missing from the slimmed image.
"""
from typing import List, Optional

from ..MODELS.runtime_image import RuntimeImage, ROOT_USERS
from ..MODELS.slimming_policy import SlimmingPolicy
from ..UTILS.log_config import get_logger
from ..errors import SlimmingError
from .container_engine import ContainerEngine, EngineError
from .entrypoint_executor import EntrypointExecutor
from .process_runner import ProcessRunner, CommandTimeout, CommandResult


class SlimRunner:
    """
    Runs the slimming tool and verifies its output fails closed.
    """

    def __init__(self, engine: ContainerEngine, policy: SlimmingPolicy):
        self.engine = engine
        self.policy = policy
        self.executor = EntrypointExecutor()
        self.runner = ProcessRunner(name=policy.tool)
        self.log = get_logger(__name__, stage="slim")

    def command(self, image: RuntimeImage, target_tag: str) -> List[str]:
        """
        Builds the tool invocation, e.g.
        ``slim build --http-probe=false --continue-after=30 --tag T --target I``.
        """
        args = [self.policy.tool, "build", f"--http-probe={str(self.policy.http_probe).lower()}"]
        if self.policy.continue_after_trace:
            args.append(f"--continue-after={self.policy.observation_window}")
        args += list(self.policy.extra_args)
        args += ["--tag", target_tag, "--target", image.reference]
        return args

    def slim(self, image: RuntimeImage, target_tag: str,
             smoke_command: Optional[List[str]] = None) -> RuntimeImage:
        """
        Produces the slimmed image under ``target_tag``.

        :raises SlimmingError: If the tool fails, times out, or its output
            changes identity, entry command or grows the file set.
        """
        command = self.command(image, target_tag)
        self.log.info("slim.start", image=image.reference, window=self.policy.observation_window,
                      http_probe=self.policy.http_probe)
        try:
            result = self.runner.run(command, timeout=self.policy.timeout)
        except CommandTimeout as e:
            raise SlimmingError(f"Slimming did not complete within {self.policy.timeout}s",
                                detail=e.partial_output[-2000:]) from e
        except FileNotFoundError as e:
            raise SlimmingError(f"Slimming tool not found: {self.policy.tool}") from e
        if not result.ok:
            raise SlimmingError(f"Slimming tool exited with {result.returncode}",
                                detail=result.output[-2000:])

        slimmed = image.model_copy(update={"reference": target_tag, "slimmed": True})
        self.verify(image, slimmed)
        if smoke_command:
            self.compare_smoke(image, slimmed, smoke_command)
        self.log.info("slim.done", image=target_tag)
        return slimmed

    def verify(self, original: RuntimeImage, slimmed: RuntimeImage) -> None:
        doc = self.engine.inspect(slimmed.reference)
        if doc is None:
            raise SlimmingError(f"Slimming produced no image at {slimmed.reference}")
        config = doc.get("Config") or {}
        raw_user = (config.get("User") or "").strip()
        user = raw_user.split(":")[0]
        if raw_user in ROOT_USERS or user in ("", "root", "0"):
            raise SlimmingError(f"Slimmed image {slimmed.reference} would run as root")
        uid = original.identity.uid
        if user != original.identity.user and (uid is None or user != str(uid)):
            raise SlimmingError(f"Slimmed image runs as '{user}', expected '{original.identity.user}'")
        entry = self.executor.from_image_config(doc)
        if entry != original.entry_command:
            raise SlimmingError(f"Slimmed image entry command {entry} differs from {original.entry_command}")

        try:
            before = self.engine.list_files(original.reference)
            after = self.engine.list_files(slimmed.reference)
        except EngineError as e:
            raise SlimmingError(f"Could not list image files: {e}") from e
        extra = sorted(after - before)
        if extra:
            raise SlimmingError(f"Slimmed image is not a subset of its input: {extra[:5]}")
        self.log.info("slim.reduced", files_before=len(before), files_after=len(after))

    def compare_smoke(self, original: RuntimeImage, slimmed: RuntimeImage, command: List[str]) -> None:
        """
        Runs the same command against both images and requires identical results.
        """
        before = self._smoke(original, command)
        after = self._smoke(slimmed, command)
        if (before.returncode, before.stdout) != (after.returncode, after.stdout):
            raise SlimmingError(
                f"Smoke command behaves differently after slimming "
                f"(exit {before.returncode} -> {after.returncode})",
                detail=after.output[-2000:],
            )

    def _smoke(self, image: RuntimeImage, command: List[str]) -> CommandResult:
        try:
            return self.engine.run(image.reference, command, network="none",
                                   timeout=self.policy.timeout)
        except CommandTimeout as e:
            raise SlimmingError(f"Smoke command timed out against {image.reference}") from e
