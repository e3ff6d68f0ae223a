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
Thin wrapper around a container engine CLI (docker, podman).

Every call goes through a ProcessRunner with an argument list; nothing is
interpreted by a shell.
"""
import json
import os
import posixpath
import subprocess
import tarfile
import uuid
from typing import List, Dict, Optional, Set, Tuple, Any

from .process_runner import ProcessRunner, CommandResult
from ..UTILS.log_config import get_logger


class EngineError(Exception):
    """Raised when an engine command that must succeed fails."""

    def __init__(self, message: str, result: Optional[CommandResult] = None):
        super().__init__(message)
        self.result = result


class ContainerEngine:
    """
    Drives a container engine through its command line interface.
    """

    def __init__(self, executable: str = "docker", config_dir: Optional[str] = None):
        """
        Args:
            executable: Engine CLI to invoke (``docker`` or ``podman``).
            config_dir: Private client configuration directory. When set,
                credentials from ``login`` are stored there instead of the
                user's default configuration.
        """
        self.executable = executable
        self.config_dir = config_dir
        self._log = get_logger(__name__, engine=executable)

    def with_config_dir(self, config_dir: str) -> "ContainerEngine":
        """Returns a copy of this engine bound to ``config_dir``."""
        return ContainerEngine(self.executable, config_dir=config_dir)

    def _env(self) -> Dict[str, str]:
        env = {}
        if self.config_dir:
            env["DOCKER_CONFIG"] = self.config_dir
            env["REGISTRY_AUTH_FILE"] = os.path.join(self.config_dir, "auth.json")
        return env

    def execute(self, args: List[str], input_text: Optional[str] = None,
                timeout: Optional[float] = None) -> CommandResult:
        runner = ProcessRunner(name=args[0] if args else self.executable)
        return runner.run([self.executable] + args, input_text=input_text,
                          timeout=timeout, extra_env=self._env())

    def _check(self, args: List[str], **kwargs) -> CommandResult:
        result = self.execute(args, **kwargs)
        if not result.ok:
            raise EngineError(f"{self.executable} {args[0]} failed ({result.returncode}): "
                              f"{result.stderr.strip()[-500:]}", result)
        return result

    # Images

    def build(self, context_dir: str, tag: str, dockerfile: Optional[str] = None,
              build_args: Optional[Dict[str, str]] = None) -> CommandResult:
        """Builds ``context_dir`` into ``tag``. The caller inspects the result."""
        dockerfile = dockerfile or os.path.join(context_dir, "Dockerfile")
        args = ["build", "-t", tag, "-f", dockerfile]
        for key, value in (build_args or {}).items():
            args += ["--build-arg", f"{key}={value}"]
        args.append(context_dir)
        return self.execute(args)

    def inspect(self, image: str) -> Optional[Dict[str, Any]]:
        """Returns the image's inspect document, or None if the image does not exist."""
        result = self.execute(["image", "inspect", image])
        if not result.ok:
            return None
        data = json.loads(result.stdout or "[]")
        return data[0] if data else None

    def tag(self, source: str, target: str) -> None:
        self._check(["tag", source, target])

    def remove_image(self, image: str) -> bool:
        return self.execute(["rmi", "-f", image]).ok

    # Containers

    def run(self, image: str, command: Optional[List[str]] = None, user: Optional[str] = None,
            entrypoint: Optional[str] = None, network: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        """Runs a throwaway container from ``image`` and returns its result."""
        args = ["run", "--rm"]
        if user:
            args += ["--user", user]
        if entrypoint is not None:
            args += ["--entrypoint", entrypoint]
        if network:
            args += ["--network", network]
        args.append(image)
        args += command or []
        return self.execute(args, timeout=timeout)

    def copy_from_image(self, image: str, source: str, dest: str) -> bool:
        """
        Copies ``source`` (following symlinks) out of ``image`` into ``dest``.

        Returns:
            True if the file was copied, False if it does not exist in the image.
        """
        container = self._create(image)
        try:
            result = self.execute(["cp", "-L", f"{container}:{source}", dest])
            return result.ok
        finally:
            self.execute(["rm", "-f", container])

    def list_files(self, image: str) -> Set[str]:
        """
        Lists every path in ``image``'s filesystem by streaming an export.
        """
        paths, _ = self.list_tree(image)
        return paths

    def list_tree(self, image: str) -> Tuple[Set[str], Dict[str, str]]:
        """
        Like ``list_files``, also returning symbolic links as path to link target.
        """
        container = self._create(image)
        paths: Set[str] = set()
        links: Dict[str, str] = {}
        process = subprocess.Popen(
            [self.executable, "export", container],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            env={**os.environ, **self._env()},
        )
        try:
            with tarfile.open(fileobj=process.stdout, mode="r|") as tar:
                for member in tar:
                    name = member.name[2:] if member.name.startswith("./") else member.name
                    path = posixpath.normpath("/" + name.lstrip("/"))
                    paths.add(path)
                    if member.issym():
                        links[path] = member.linkname
        finally:
            process.stdout.close()
            process.wait()
            self.execute(["rm", "-f", container])
        if process.returncode != 0:
            raise EngineError(f"{self.executable} export of {image} failed ({process.returncode})")
        return paths, links

    def _create(self, image: str) -> str:
        name = f"slimpipe-{uuid.uuid4().hex[:12]}"
        # A placeholder command lets images without CMD be created too
        self._check(["create", "--name", name, image, "/"])
        return name

    # Registry

    def login(self, registry: str, username: str, secret: str) -> CommandResult:
        """Logs in, passing the secret on stdin only."""
        return self.execute(["login", registry, "--username", username, "--password-stdin"],
                            input_text=secret)

    def logout(self, registry: str) -> None:
        self.execute(["logout", registry])

    def push(self, reference: str) -> CommandResult:
        return self.execute(["push", reference])
