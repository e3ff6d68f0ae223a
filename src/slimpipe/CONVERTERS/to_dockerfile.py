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
Converters that render build and runtime recipes (Dockerfiles) from pipeline models.
"""
import json
from typing import List, Dict

from jinja2 import Environment, StrictUndefined

from ..MODELS.build_spec import BuildSpec, PackageManager
from ..MODELS.runtime_image import RuntimeSpec

BUILDER_TEMPLATE = """\
# builder for {{ spec.name }}, discarded after the artifact is extracted
FROM {{ spec.toolchain_image }}
{% if install %}
RUN {{ install }}
{% endif %}
{% for command in spec.setup_commands %}
RUN {{ command }}
{% endfor %}
{% for key, value in spec.env.items() %}
ENV {{ key }}={{ value | quote }}
{% endfor %}
COPY . {{ spec.workdir }}
WORKDIR {{ spec.workdir }}
RUN {{ spec.build_command | exec_form }}
"""

RUNTIME_TEMPLATE = """\
FROM {{ runtime.base_image }}
RUN {{ create_user }}
{% for lib in libraries %}
COPY {{ lib.source }} {{ lib.target }}
{% endfor %}
COPY --chown={{ identity.user }}:{{ identity.user }} {{ artifact_source }} {{ runtime.artifact_target }}
{% for key, value in labels.items() %}
LABEL {{ key }}={{ value | quote }}
{% endfor %}
USER {{ identity.user }}
WORKDIR {{ identity.home }}
CMD {{ runtime.entry_command | exec_form }}
"""

_INSTALL_COMMANDS = {
    PackageManager.APT: "apt-get update && apt-get install -y {packages} && apt-get clean && rm -rf /var/lib/apt/lists/*",
    PackageManager.APK: "apk add --no-cache {packages}",
    PackageManager.DNF: "dnf install -y {packages} && dnf clean all",
}


def _exec_form(command: List[str]) -> str:
    return json.dumps(list(command))


def _quote(value: str) -> str:
    return json.dumps(str(value))


def _environment() -> Environment:
    env = Environment(trim_blocks=True, lstrip_blocks=True, undefined=StrictUndefined,
                      keep_trailing_newline=True)
    env.filters["exec_form"] = _exec_form
    env.filters["quote"] = _quote
    return env


class DockerfileConverter:
    """
    Renders the builder and runtime recipes.
    """

    def __init__(self):
        env = _environment()
        self.builder_template = env.from_string(BUILDER_TEMPLATE)
        self.runtime_template = env.from_string(RUNTIME_TEMPLATE)

    def render_builder(self, spec: BuildSpec) -> str:
        """
        Renders the builder recipe for a BuildSpec.

        :param spec: The build specification.
        :return: The recipe text.
        """
        install = ""
        if spec.packages:
            install = _INSTALL_COMMANDS[spec.package_manager].format(packages=" ".join(spec.packages))
        return self.builder_template.render(spec=spec, install=install)

    def render_runtime(self,
                       runtime: RuntimeSpec,
                       artifact_source: str,
                       libraries: List[Dict[str, str]],
                       create_user: str,
                       labels: Dict[str, str]) -> str:
        """
        Renders the runtime recipe.

        :param runtime: The runtime description.
        :param artifact_source: Context-relative path of the staged artifact.
        :param libraries: ``{"source": ..., "target": ...}`` for each library to copy.
        :param create_user: Shell step creating the unprivileged user.
        :param labels: Image labels.
        :return: The recipe text.
        """
        return self.runtime_template.render(
            runtime=runtime,
            identity=runtime.identity,
            artifact_source=artifact_source,
            libraries=libraries,
            create_user=create_user,
            labels=labels,
        )
