"""
Utilities for resolving the effective entry command of an image.
"""
from typing import List, Optional, Dict, Any

SHELL_WRAPPERS = (["/bin/sh", "-c"], ["sh", "-c"], ["/bin/bash", "-c"], ["bash", "-c"])


class EntrypointExecutor:
    """
    Handles the merging of ENTRYPOINT and CMD instructions according to Docker rules.
    """
    def get_full_command(self, entrypoint: Optional[List[str]], cmd: Optional[List[str]]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The ENTRYPOINT list.
        :param cmd: The CMD list.
        :return: The full command list.
        """
        # If ENTRYPOINT is defined, it's the executable and CMD becomes arguments.
        # Otherwise CMD is the executable plus arguments.
        if entrypoint:
            return list(entrypoint) + list(cmd or [])
        return list(cmd or [])

    def from_image_config(self, inspect_doc: Dict[str, Any]) -> List[str]:
        """
        Extracts the effective command from an ``image inspect`` document.

        :param inspect_doc: The inspect document of an image.
        :return: The full command list.
        """
        config = inspect_doc.get("Config") or {}
        return self.get_full_command(config.get("Entrypoint"), config.get("Cmd"))

    @staticmethod
    def is_shell_wrapped(command: List[str]) -> bool:
        """
        True if the command runs through a shell instead of invoking the program directly.
        """
        return any(command[:len(w)] == w for w in SHELL_WRAPPERS)
