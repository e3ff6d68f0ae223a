"""
Parsers for pipeline YAML files.
"""
import os
import shlex
from typing import Dict, Any, Optional

import yaml
from pydantic import ValidationError

from ..MODELS.pipeline_config import PipelineConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.log_config import get_logger
from ..errors import ConfigError

log = get_logger(__name__)


class ConfigParser:
    """
    Parser for ``pipeline.yml`` files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else context

    def parse(self, config_path: str, overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
        """
        Parses a pipeline file from a path.

        :param config_path: Path to the pipeline file.
        :param overrides: Sections merged over the file's content.
        :return: Parsed configuration.
        """
        with open(config_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(config_path))
        return self.parse_from_string(content, base_dir=base_dir, overrides=overrides)

    def load_data(self, content: str) -> Dict[str, Any]:
        """
        Interpolates and loads the YAML content into a plain dictionary.
        """
        missing = EnvironmentInterpolator.missing(content, self.context)
        if missing:
            log.warning("config.unset_variables", variables=missing)
        content = EnvironmentInterpolator.interpolate(content, self.context, strict=False)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid pipeline YAML: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError("Pipeline file must contain a mapping")
        return data

    def parse_from_string(self, content: str, base_dir: str = ".",
                          overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
        """
        Parses a pipeline file from a string.

        :param content: YAML content of the pipeline file.
        :param base_dir: Directory relative source paths are resolved against.
        :param overrides: Sections merged over the file's content.
        :return: Parsed configuration.
        :raises ConfigError: If the content does not describe a valid pipeline.
        """
        data = self.normalize(self.load_data(content))
        for section, values in (overrides or {}).items():
            data[section] = self._merge(data.get(section) or {}, values)
        return self.from_dict(data, base_dir)

    def from_dict(self, data: Dict[str, Any], base_dir: str = ".") -> PipelineConfig:
        data = self.normalize(data)
        build = dict(data.get('build') or {})
        if build.get('source_dir') and not os.path.isabs(build['source_dir']):
            build['source_dir'] = os.path.normpath(os.path.join(base_dir, build['source_dir']))
        elif 'source_dir' not in build:
            build['source_dir'] = base_dir
        if 'command' in build:
            build['build_command'] = self._to_list(build.pop('command'))
        if 'output' in build:
            build['output_path'] = build.pop('output')

        runtime = dict(data.get('runtime') or {})
        if 'user' in runtime:
            identity = dict(runtime.get('identity') or {})
            identity['user'] = runtime.pop('user')
            identity['home'] = runtime.pop('home', None)
            runtime['identity'] = identity
        for key in ('entry_command', 'smoke_command'):
            if key in runtime:
                runtime[key] = self._to_list(runtime[key])

        raw = {
            'build': build,
            'runtime': runtime,
            'publish': data.get('publish') or {},
        }
        if data.get('slimming') is not None:
            raw['slimming'] = data['slimming']
        if data.get('triggers'):
            raw['triggers'] = data['triggers']

        try:
            return PipelineConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid pipeline configuration: {e}") from e

    def normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        if 'slim' in data and 'slimming' not in data:
            data['slimming'] = data.pop('slim')
        if isinstance(data.get('slimming'), bool):
            data['slimming'] = {'enabled': data['slimming']}
        return data

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(base)
        for key, value in override.items():
            if value is not None:
                merged[key] = value
        return merged

    def _to_list(self, val: Any):
        """
        Helper to ensure a command value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise ConfigError(f"Cannot split command {val!r}: {e}") from e
        return [str(v) for v in val]
