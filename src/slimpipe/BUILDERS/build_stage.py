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
Build Stage: compiles the source inside a throwaway builder image and
extracts the single artifact it produces.
"""
import hashlib
import os
import posixpath
import uuid
from typing import List

from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..MODELS.artifact import Artifact, SharedLibrary
from ..MODELS.build_spec import BuildSpec
from ..PARSERS.ldd_parser import LddParser
from ..RUNNERS.container_engine import ContainerEngine, EngineError
from ..UTILS.log_config import get_logger
from ..errors import CompileError


def file_digest(path: str) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha.update(chunk)
    return f"sha256:{sha.hexdigest()}"


class BuildStage:
    """
    Runs the compile step in an isolated builder and returns the staged Artifact.

    Nothing from the builder outlives this stage except the files written to
    the staging directory: the artifact and the shared libraries the loader
    located for it.
    """

    def __init__(self, engine: ContainerEngine, work_dir: str, run_id: str = ""):
        """
        :param engine: Container engine used for the builder.
        :param work_dir: Run-scoped directory for the recipe and staged files.
        :param run_id: Identifier used to name the throwaway builder image.
        """
        self.engine = engine
        self.work_dir = work_dir
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.converter = DockerfileConverter()
        self.ldd_parser = LddParser()
        self.log = get_logger(__name__, stage="build")

    def run(self, spec: BuildSpec) -> Artifact:
        """
        Builds ``spec`` and extracts its artifact.

        :raises CompileError: On a non-zero compile exit or a missing output file.
        """
        if not os.path.isdir(spec.source_dir):
            raise CompileError(f"Source directory not found: {spec.source_dir}")

        staging = os.path.join(self.work_dir, "build")
        os.makedirs(os.path.join(staging, "libs"), exist_ok=True)
        recipe_path = os.path.join(staging, "Dockerfile.build")
        with open(recipe_path, "w") as f:
            f.write(self.converter.render_builder(spec))

        builder_tag = f"slimpipe-builder-{spec.name.lower()}:{self.run_id}"
        self.log.info("build.start", toolchain=spec.toolchain_image, tag=builder_tag)
        try:
            result = self.engine.build(spec.source_dir, builder_tag, dockerfile=recipe_path)
            if not result.ok:
                self.log.error("build.failed", exit_code=result.returncode)
                raise CompileError(
                    f"Compile step exited with {result.returncode}",
                    exit_code=result.returncode,
                    detail=result.stderr[-2000:],
                )
            return self._extract(spec, builder_tag, staging)
        finally:
            self.engine.remove_image(builder_tag)
            self.log.debug("build.builder_removed", tag=builder_tag)

    def _extract(self, spec: BuildSpec, builder_tag: str, staging: str) -> Artifact:
        name = posixpath.basename(spec.output_path)
        artifact_path = os.path.join(staging, name)
        try:
            copied = self.engine.copy_from_image(builder_tag, spec.output_path, artifact_path)
        except EngineError as e:
            raise CompileError(f"Could not open builder image: {e}") from e
        if not copied or not os.path.isfile(artifact_path):
            raise CompileError(f"Build produced no file at {spec.output_path}")

        libraries = self._stage_libraries(spec, builder_tag, staging)
        artifact = Artifact(
            name=name,
            path=artifact_path,
            source_path=spec.output_path,
            digest=file_digest(artifact_path),
            libraries=libraries,
        )
        self.log.info("build.done", artifact=name, digest=artifact.digest[:19],
                      libraries=len(libraries))
        return artifact

    def _stage_libraries(self, spec: BuildSpec, builder_tag: str, staging: str) -> List[SharedLibrary]:
        """
        Records the loader report and copies each located library out of the builder.
        """
        report = self.engine.run(builder_tag, ["ldd", spec.output_path], entrypoint="")
        entries = self.ldd_parser.parse_from_string(report.stdout + "\n" + report.stderr)

        libraries = []
        for entry in entries:
            staged = None
            if entry.path:
                dest = os.path.join(staging, "libs", entry.soname)
                if self.engine.copy_from_image(builder_tag, entry.path, dest):
                    staged = dest
                else:
                    self.log.warning("build.library_not_copied", soname=entry.soname)
            libraries.append(SharedLibrary(
                soname=entry.soname,
                build_path=entry.path if staged else None,
                staged_path=staged,
            ))
        return libraries
