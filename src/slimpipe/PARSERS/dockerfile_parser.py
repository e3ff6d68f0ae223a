"""
Parsers for multi-stage Dockerfiles, extracting stages, instructions and flags.
"""
import json
import re
from typing import List, Dict, Tuple
from ..MODELS.recipe import Instruction, Recipe, RecipeStage
from ..errors import ConfigError


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> Recipe:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            Recipe: The parsed recipe, split into stages.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_instructions(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile string into a flat list of instructions.
        """
        instructions = []

        # 1. Remove comments
        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)

        # 2. Handle line continuations with \
        content = re.sub(r'\\[ \t]*\r?\n', ' ', content)

        # 3. Dockerfile instructions must start a line, but can be preceded by whitespace
        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            flags, args_str = self._split_flags(match.group(2).strip())

            # 4. Handle JSON/Exec form vs Shell form
            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = json.loads(args_str)
                except json.JSONDecodeError:
                    args = [args_str]
                if not isinstance(args, list):
                    args = [args_str]
                args = [str(a) for a in args]
            elif inst == "ENV":
                if '=' in args_str:
                    args = re.findall(r'(\S+=(?:"[^"]*"|\S*))', args_str)
                    args = [a.replace('"', '') for a in args]
                else:
                    args = args_str.split(None, 1)
            elif inst in ("FROM", "COPY", "ADD", "USER", "WORKDIR"):
                args = args_str.split()
            else:
                args = [args_str]

            instructions.append(Instruction(
                instruction=inst,
                arguments=args,
                flags=flags,
                raw=match.group(0).strip()
            ))

        return instructions

    def parse_from_string(self, content: str) -> Recipe:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            Recipe: The parsed recipe, split into stages.

        Raises:
            ConfigError: If an instruction appears before the first FROM.
        """
        recipe = Recipe()
        for inst in self.parse_instructions(content):
            if inst.instruction == "FROM":
                if not inst.arguments:
                    raise ConfigError("FROM without a base image")
                args = inst.arguments
                name = args[2] if len(args) >= 3 and args[1].upper() == "AS" else None
                recipe.stages.append(RecipeStage(index=len(recipe.stages), base=args[0], name=name))
            elif inst.instruction == "ARG" and not recipe.stages:
                continue
            elif not recipe.stages:
                raise ConfigError(f"{inst.instruction} before the first FROM")
            else:
                recipe.stages[-1].instructions.append(inst)
        return recipe

    @staticmethod
    def _split_flags(args_str: str) -> Tuple[Dict[str, str], str]:
        """
        Strips leading ``--flag=value`` options (e.g. ``COPY --from=builder``).
        """
        flags = {}
        while args_str.startswith('--'):
            token, _, rest = args_str.partition(' ')
            key, _, value = token[2:].partition('=')
            flags[key] = value
            args_str = rest.strip()
        return flags, args_str
