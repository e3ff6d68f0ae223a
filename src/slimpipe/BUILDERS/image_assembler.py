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
Assembly Stage: copies the artifact and its resolved libraries into a
minimal base, under a dedicated unprivileged user.
"""
import os
import posixpath
import shutil
from typing import List, Dict, Optional

from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..MODELS.artifact import Artifact, BaseInventory, DependencySet
from ..MODELS.runtime_image import (
    RuntimeSpec, RuntimeImage, ImageFile, ROOT_USERS, is_build_only_path,
)
from ..RUNNERS.container_engine import ContainerEngine
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from ..RUNNERS.process_runner import CommandTimeout
from ..UTILS.log_config import get_logger
from ..errors import AssemblyError, UnresolvedDependencyError

LOADER_FAILURE = "error while loading shared libraries"

# (path of the tool in the base, command template)
USER_CREATORS = (
    ("/usr/sbin/useradd", "useradd -m -d {home}{uid} {user} && chmod 0700 {home}"),
    ("/sbin/adduser", "adduser -D -h {home}{uid} {user} && chmod 0700 {home}"),
    ("/usr/sbin/adduser", "adduser -D -h {home}{uid} {user} && chmod 0700 {home}"),
)


class ImageAssembler:
    """
    Builds the RuntimeImage from an Artifact and its DependencySet.
    """

    def __init__(self, engine: ContainerEngine, work_dir: str):
        """
        :param engine: Container engine used for the runtime build.
        :param work_dir: Run-scoped directory for the assembly context.
        """
        self.engine = engine
        self.work_dir = work_dir
        self.converter = DockerfileConverter()
        self.executor = EntrypointExecutor()
        self.log = get_logger(__name__, stage="assemble")

    def assemble(self,
                 artifact: Artifact,
                 deps: DependencySet,
                 runtime: RuntimeSpec,
                 inventory: BaseInventory,
                 tag: str) -> RuntimeImage:
        """
        Assembles and builds the runtime image, then verifies its configuration.

        :raises AssemblyError: On a bad copy, a root identity or a failed build.
        :raises UnresolvedDependencyError: If the smoke command fails to load a library.
        """
        if self.executor.is_shell_wrapped(runtime.entry_command):
            raise AssemblyError("Entry command must invoke the artifact directly, not through a shell")

        context = os.path.join(self.work_dir, "assemble")
        if os.path.exists(context):
            shutil.rmtree(context)
        os.makedirs(os.path.join(context, "libs"))

        files = self._plan_files(artifact, deps, runtime, inventory)
        libraries = []
        for f in files:
            rel = os.path.join("libs", os.path.basename(f.source)) if not f.owned_by_user else artifact.name
            shutil.copy2(f.source, os.path.join(context, rel))
            if not f.owned_by_user:
                libraries.append({"source": rel, "target": f.target})

        labels: Dict[str, str] = {
            "org.opencontainers.image.title": runtime.artifact_name,
            "io.slimpipe.artifact.digest": artifact.digest,
        }
        labels.update(runtime.labels)

        recipe = self.converter.render_runtime(
            runtime,
            artifact_source=artifact.name,
            libraries=libraries,
            create_user=self._create_user_step(runtime, inventory),
            labels=labels,
        )
        with open(os.path.join(context, "Dockerfile"), "w") as f:
            f.write(recipe)

        self.log.info("assemble.start", base=runtime.base_image, tag=tag, files=len(files))
        result = self.engine.build(context, tag)
        if not result.ok:
            raise AssemblyError(f"Runtime image build failed ({result.returncode})",
                                detail=result.stderr[-2000:])

        image = RuntimeImage(
            reference=tag,
            base_image=runtime.base_image,
            files=files,
            identity=runtime.identity,
            working_dir=runtime.identity.home,
            entry_command=runtime.entry_command,
            labels=labels,
        )
        self.verify(image)
        if runtime.smoke_command:
            self.smoke_test(image, runtime.smoke_command)
        self.log.info("assemble.done", tag=tag, user=image.identity.user)
        return image

    def _plan_files(self, artifact: Artifact, deps: DependencySet,
                    runtime: RuntimeSpec, inventory: BaseInventory) -> List[ImageFile]:
        """
        Lists every copy and checks its source and destination.
        """
        files = [ImageFile(source=artifact.path, target=runtime.artifact_target, owned_by_user=True)]
        for lib in deps.copy_set:
            files.append(ImageFile(source=lib.staged_path, target=lib.build_path))

        home = posixpath.normpath(runtime.identity.home)
        for f in files:
            if not f.source or not os.path.isfile(f.source):
                raise AssemblyError(f"Copy source missing: {f.source}")
            if not f.target or not f.target.startswith("/"):
                raise AssemblyError(f"Copy target must be absolute: {f.target}")
            if is_build_only_path(f.target):
                raise AssemblyError(f"Refusing to copy build-only path into runtime image: {f.target}")
            directory = posixpath.dirname(posixpath.normpath(f.target))
            # The home directory is created by the recipe itself
            if directory != home and not inventory.has_dir(directory):
                raise AssemblyError(f"Copy target directory {directory} does not exist in {inventory.image}")
        return files

    def _create_user_step(self, runtime: RuntimeSpec, inventory: BaseInventory) -> str:
        identity = runtime.identity
        for tool, template in USER_CREATORS:
            if inventory.has_path(tool):
                uid = f" -u {identity.uid}" if identity.uid else ""
                return template.format(home=identity.home, uid=uid, user=identity.user)
        raise AssemblyError(f"{inventory.image} has no useradd or adduser to create '{identity.user}'")

    def verify(self, image: RuntimeImage) -> None:
        """
        Checks the built image's default identity and entry command.

        :raises AssemblyError: If the image would run as root or with another command.
        """
        doc = self.engine.inspect(image.reference)
        if doc is None:
            raise AssemblyError(f"Assembled image {image.reference} not found")
        user = ((doc.get("Config") or {}).get("User") or "").strip()
        if user in ROOT_USERS or user.split(":")[0] in ("root", "0"):
            raise AssemblyError(f"Image {image.reference} would run as root")
        entry = self.executor.from_image_config(doc)
        if entry != image.entry_command:
            raise AssemblyError(f"Image entry command {entry} differs from declared {image.entry_command}")

    def smoke_test(self, image: RuntimeImage, command: List[str], timeout: Optional[float] = 60):
        """
        Runs ``command`` in the image and fails on a non-zero exit.

        :raises UnresolvedDependencyError: If the dynamic loader could not find a library.
        :raises AssemblyError: On any other failure.
        """
        try:
            result = self.engine.run(image.reference, command, timeout=timeout)
        except CommandTimeout as e:
            raise AssemblyError(f"Smoke test did not finish within {timeout}s") from e
        if result.ok:
            return result
        if LOADER_FAILURE in result.output:
            soname = result.output.split(LOADER_FAILURE + ":", 1)[-1].strip().split(":")[0]
            raise UnresolvedDependencyError(f"Smoke test failed to load {soname}",
                                            soname=soname or None,
                                            detail=result.output[-2000:])
        raise AssemblyError(f"Smoke test exited with {result.returncode}", detail=result.output[-2000:])
