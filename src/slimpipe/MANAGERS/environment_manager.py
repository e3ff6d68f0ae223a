"""
Managers for handling environment variables, .env files and per-run credentials.
"""
import os
from typing import Dict, List, Optional
from dotenv import dotenv_values
from pydantic import SecretStr

from ..MODELS.publish_target import RegistryCredential, PublishSettings
from ..errors import ConfigError

# Fallback variable names set by the CI system the original workflow ran on
CI_USERNAME_FALLBACKS = ("GITHUB_ACTOR",)
CI_TOKEN_FALLBACKS = ("GHCR_TOKEN", "GITHUB_TOKEN")


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = ".", environ: Optional[Dict[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param environ: The process environment; defaults to ``os.environ``.
        """
        self.base_dir = base_dir
        self.environ = dict(os.environ if environ is None else environ)

    def get_merged_environment(self, env_files: List[str],
                               explicit_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges variables from .env files, the process environment and explicit values.

        :param env_files: A list of paths to .env files; later files override earlier ones.
        :param explicit_env: Explicitly defined variables, which override everything.
        :return: A dictionary containing the merged environment variables.
        """
        merged: Dict[str, str] = {}
        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                values = dotenv_values(file_path)
                merged.update({k: v for k, v in values.items() if v is not None})

        # The process environment wins over files, as with python-dotenv's default
        merged.update(self.environ)
        if explicit_env:
            merged.update(explicit_env)
        return merged

    def load_credential(self, settings: PublishSettings,
                        env: Optional[Dict[str, str]] = None) -> RegistryCredential:
        """
        Reads the registry credential named by ``settings`` at invocation time.

        :param settings: Publication settings naming the credential variables.
        :param env: Environment to read from; defaults to the process environment.
        :raises ConfigError: If the username or token is missing.
        """
        env = self.environ if env is None else env
        username = self._first(env, (settings.username_env,) + CI_USERNAME_FALLBACKS)
        token = self._first(env, (settings.token_env,) + CI_TOKEN_FALLBACKS)
        if not username:
            raise ConfigError(f"Registry username not set (expected ${settings.username_env})")
        if not token:
            raise ConfigError(f"Registry token not set (expected ${settings.token_env})")
        return RegistryCredential(username=username, token=SecretStr(token))

    @staticmethod
    def _first(env: Dict[str, str], names) -> Optional[str]:
        for name in names:
            value = env.get(name)
            if value:
                return value
        return None
