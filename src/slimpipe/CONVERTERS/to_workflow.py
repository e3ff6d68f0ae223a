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
Converters for generating CI workflows that trigger the pipeline.
"""
import os
from jinja2 import Template
from ..MODELS.pipeline_config import PipelineConfig

WORKFLOW_TEMPLATE = """\
name: Publish {{ name }} image to {{ registry }}

on:
  push:
    branches:
      - {{ default_branch }}
{% if allow_manual %}
  workflow_dispatch:
{% endif %}

jobs:
  build-and-push:
    runs-on: ubuntu-latest

    steps:
      - name: Checkout repository
        uses: actions/checkout@v4

      - name: Set up Python
        uses: actions/setup-python@v5
        with:
          python-version: "3.11"

      - name: Install slimpipe
        run: pip install slimpipe

{% if slim %}
      - name: Install slimming tool
        run: |
          wget -q {{ slim_url }}
          tar -xzf dist_linux.tar.gz
          sudo cp dist_linux/* /usr/local/bin/

{% endif %}
      - name: Build, assemble{% if slim %}, slim{% endif %} and publish
        env:
          {{ username_env }}: ${{ '{{' }} github.actor {{ '}}' }}
          {{ token_env }}: ${{ '{{' }} secrets.{{ secret_name }} {{ '}}' }}
        run: |
          slimpipe run -f {{ config_path }} --event ${{ '{{' }} github.event_name == 'workflow_dispatch' && 'manual' || 'push' {{ '}}' }} --ref ${{ '{{' }} github.ref {{ '}}' }}
"""

SLIM_RELEASE_URL = "https://github.com/slimtoolkit/slim/releases/download/1.40.11/dist_linux.tar.gz"


class WorkflowConverter:
    """
    Converts a pipeline configuration into a GitHub Actions workflow.
    """

    def __init__(self, config: PipelineConfig, config_path: str = "pipeline.yml",
                 secret_name: str = "GHCR_TOKEN"):
        """
        Initializes the workflow converter.

        :param config: The parsed pipeline configuration.
        :param config_path: Path of the pipeline file relative to the repository root.
        :param secret_name: Name of the CI secret holding the registry token.
        """
        self.config = config
        self.config_path = config_path
        self.secret_name = secret_name
        self.template = Template(WORKFLOW_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def render(self) -> str:
        publish = self.config.publish
        return self.template.render(
            name=self.config.name,
            registry=publish.registry,
            default_branch=self.config.triggers.default_branch,
            allow_manual=self.config.triggers.allow_manual,
            slim=self.config.slimming.enabled,
            slim_url=SLIM_RELEASE_URL,
            username_env=publish.username_env,
            token_env=publish.token_env,
            secret_name=self.secret_name,
            config_path=self.config_path,
        )

    def convert(self, output_path: str = ".github/workflows/publish.yml") -> str:
        """
        Writes the workflow file.

        :param output_path: Where the workflow is written.
        :return: The path of the written file.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        return output_path
