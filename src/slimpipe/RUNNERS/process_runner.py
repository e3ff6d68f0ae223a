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
Execution of external commands with bounded runtime and process-tree cleanup.
"""
import os
import subprocess
from dataclasses import dataclass, field
from typing import List, Dict, Optional

import psutil

from ..UTILS.log_config import get_logger


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as a human would read it."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandTimeout(Exception):
    """Raised when a command exceeds its time bound and was killed."""

    def __init__(self, args: List[str], timeout: float, partial_output: str = ""):
        super().__init__(f"Command timed out after {timeout}s: {args[0] if args else ''}")
        self.args_list = args
        self.timeout = timeout
        self.partial_output = partial_output


@dataclass
class ProcessRunner:
    """
    Runs one external command at a time, never through a shell.
    """

    name: str
    env: Optional[Dict[str, str]] = None
    _process: Optional[subprocess.Popen] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self._log = get_logger(__name__, runner=self.name)

    def run(self,
            command: List[str],
            input_text: Optional[str] = None,
            timeout: Optional[float] = None,
            working_dir: Optional[str] = None,
            extra_env: Optional[Dict[str, str]] = None) -> CommandResult:
        """
        Runs ``command`` to completion.

        Args:
            command: Command and arguments to execute.
            input_text: Text written to the command's stdin (used for secrets).
            timeout: Seconds before the process tree is killed.
            working_dir: Directory to start the process in.
            extra_env: Variables layered over the runner's environment.

        Returns:
            CommandResult: Exit code and captured output.

        Raises:
            CommandTimeout: If the command did not finish within ``timeout``.
            FileNotFoundError: If the executable does not exist.
        """
        env = dict(self.env if self.env is not None else os.environ)
        if extra_env:
            env.update(extra_env)

        self._log.debug("command.start", command=command[:2])
        # Avoid shell=True for security reasons (CWE-78)
        self._process = subprocess.Popen(
            command,
            env=env,
            cwd=working_dir,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            shell=False,
        )
        try:
            stdout, stderr = self._process.communicate(input=input_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._log.warning("command.timeout", command=command[:2], timeout=timeout)
            self.stop()
            stdout, stderr = self._process.communicate()
            raise CommandTimeout(command, timeout, (stdout or "") + (stderr or ""))
        finally:
            returncode = self._process.returncode
            self._process = None

        result = CommandResult(args=list(command), returncode=returncode,
                               stdout=stdout or "", stderr=stderr or "")
        return result

    def stop(self, timeout: int = 10):
        """
        Kills the running process and all of its children.

        Args:
            timeout (int): Seconds to wait for termination before killing.
        """
        if self._process is None or self._process.poll() is not None:
            return
        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            self._log.warning("command.kill", pid=proc.pid)
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None
