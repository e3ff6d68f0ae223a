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
Error taxonomy for pipeline runs.

Every stage failure is fatal to the run. The ``kind`` of the raised error is
what a run reports as its failure reason.
"""
from typing import Optional


class PipelineError(Exception):
    """
    Base class for all errors that terminate a pipeline run.
    """
    kind = "PipelineError"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        return self.message


class ConfigError(PipelineError):
    """Raised when a pipeline configuration or recipe is invalid."""
    kind = "ConfigError"


class CompileError(PipelineError):
    """Raised when the compile step exits non-zero or produces no artifact."""
    kind = "CompileError"

    def __init__(self, message: str, exit_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.exit_code = exit_code


class UnresolvedDependencyError(PipelineError):
    """Raised when a shared library is found neither in the build output nor in the base."""
    kind = "UnresolvedDependencyError"

    def __init__(self, message: str, soname: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.soname = soname


class AssemblyError(PipelineError):
    """Raised when the runtime image cannot be assembled as declared."""
    kind = "AssemblyError"


class SlimmingError(PipelineError):
    """Raised when the trace-based slimming pass fails or cannot be verified."""
    kind = "SlimmingError"


class AuthError(PipelineError):
    """Raised when the registry rejects the supplied credential."""
    kind = "AuthError"


class PushError(PipelineError):
    """Raised on transport or registry failure while pushing."""
    kind = "PushError"
