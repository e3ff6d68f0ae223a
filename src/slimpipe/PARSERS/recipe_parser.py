"""
Derives build and runtime descriptions from an existing multi-stage recipe.

The builder stage is the one the final stage copies its artifact from; its
package installs, setup steps, environment and last RUN become a BuildSpec,
and the final stage's user, copy destination and command become a RuntimeSpec.
"""
import posixpath
import re
import shlex
from typing import Dict, Any, List, Optional, Tuple

from ..MODELS.recipe import Recipe, RecipeStage, Instruction
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from ..errors import ConfigError
from .dockerfile_parser import DockerfileParser

# (package manager, tokens that introduce an install)
_INSTALLERS = (
    ("apt", ("apt-get", "install")),
    ("apt", ("apt", "install")),
    ("apk", ("apk", "add")),
    ("dnf", ("dnf", "install")),
    ("dnf", ("yum", "install")),
)
# Housekeeping segments that belong to the package step
_HOUSEKEEPING = re.compile(
    r'^(apt-get|apt)\s+(update|clean|autoremove)|^rm\s+-rf\s+/var/(lib/apt|cache)|^(dnf|yum)\s+clean|^apk\s+update'
)
_SHELL_META = set('|&;<>()$`\\"\'*?[]#~=%{}')


def _tokens(segment: str) -> List[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        return segment.split()


class RecipeParser:
    """
    Converts a parsed Recipe into pipeline configuration sections.
    """
    def __init__(self):
        self.dockerfile_parser = DockerfileParser()
        self.executor = EntrypointExecutor()

    def parse(self, dockerfile_path: str, source_dir: Optional[str] = None) -> Dict[str, Any]:
        recipe = self.dockerfile_parser.parse(dockerfile_path)
        return self.to_config_data(recipe, source_dir or posixpath.dirname(dockerfile_path) or ".")

    def to_config_data(self, recipe: Recipe, source_dir: str = ".") -> Dict[str, Any]:
        """
        Builds the ``build`` and ``runtime`` sections of a pipeline configuration.

        :param recipe: The parsed recipe.
        :param source_dir: Host directory the builder copies its sources from.
        :raises ConfigError: If the recipe has no builder to final-stage copy.
        """
        final = recipe.final
        if final is None:
            raise ConfigError("Recipe has no stages")

        copy, builder = self._artifact_copy(recipe, final)
        output_path, target = copy.arguments[0], copy.arguments[-1]
        if target.endswith("/"):
            target = posixpath.join(target, posixpath.basename(output_path))

        return {
            'build': self._build_section(builder, output_path, source_dir),
            'runtime': self._runtime_section(final, target),
        }

    def _artifact_copy(self, recipe: Recipe, final: RecipeStage) -> Tuple[Instruction, RecipeStage]:
        for inst in final.find("COPY"):
            ref = inst.flags.get("from")
            if ref and len(inst.arguments) >= 2:
                builder = recipe.stage(ref)
                if builder is None:
                    raise ConfigError(f"COPY --from={ref} references an unknown stage")
                return inst, builder
        raise ConfigError("Final stage does not copy an artifact from a builder stage")

    def _build_section(self, builder: RecipeStage, output_path: str, source_dir: str) -> Dict[str, Any]:
        runs = builder.find("RUN")
        if not runs:
            raise ConfigError(f"Builder stage '{builder.name or builder.index}' has no RUN step")

        package_manager = None
        packages: List[str] = []
        setup_commands: List[str] = []
        for inst in runs[:-1]:
            manager, pkgs, rest = self._split_package_step(" ".join(inst.arguments))
            if manager:
                package_manager = package_manager or manager
                packages.extend(p for p in pkgs if p not in packages)
            if rest:
                setup_commands.append(rest)

        env: Dict[str, str] = {}
        for inst in builder.find("ENV"):
            if len(inst.arguments) == 2 and '=' not in inst.arguments[0]:
                env[inst.arguments[0]] = inst.arguments[1]
            else:
                for arg in inst.arguments:
                    if '=' in arg:
                        k, v = arg.split('=', 1)
                        env[k] = v

        workdir = builder.last("WORKDIR")
        section = {
            'name': posixpath.basename(output_path),
            'toolchain_image': builder.base,
            'packages': packages,
            'setup_commands': setup_commands,
            'env': env,
            'source_dir': source_dir,
            'workdir': workdir.arguments[0] if workdir and workdir.arguments else "/",
            'build_command': self._command(runs[-1].arguments),
            'output_path': output_path,
        }
        if package_manager:
            section['package_manager'] = package_manager
        return section

    def _runtime_section(self, final: RecipeStage, target: str) -> Dict[str, Any]:
        user_inst = final.last("USER")
        if user_inst is None or not user_inst.arguments:
            raise ConfigError("Final stage does not declare a USER")
        user = user_inst.arguments[0].split(":")[0]

        home = None
        for inst in final.find("RUN"):
            home = self._home_from_useradd(" ".join(inst.arguments), user) or home

        entrypoint = final.last("ENTRYPOINT")
        cmd = final.last("CMD")
        entry = self.executor.get_full_command(
            entrypoint.arguments if entrypoint else None,
            cmd.arguments if cmd else None,
        )
        return {
            'base_image': final.base,
            'identity': {'user': user, 'home': home or posixpath.dirname(target)},
            'artifact_name': posixpath.basename(target),
            'entry_command': entry,
        }

    def _split_package_step(self, command: str) -> Tuple[Optional[str], List[str], str]:
        """
        Splits a shell RUN into (package manager, packages, remaining commands).
        """
        manager = None
        packages: List[str] = []
        rest: List[str] = []
        for segment in re.split(r'\s*(?:&&|;)\s*', command.strip()):
            if not segment:
                continue
            tokens = _tokens(segment)
            found = self._installer(tokens)
            if found:
                manager, start = found
                packages.extend(t for t in tokens[start:] if not t.startswith('-'))
            elif not _HOUSEKEEPING.match(segment):
                rest.append(segment)
        return manager, packages, " && ".join(rest)

    @staticmethod
    def _installer(tokens: List[str]) -> Optional[Tuple[str, int]]:
        for manager, (tool, verb) in _INSTALLERS:
            if tool in tokens and verb in tokens and tokens.index(verb) > tokens.index(tool):
                return manager, tokens.index(verb) + 1
        return None

    @staticmethod
    def _home_from_useradd(command: str, user: str) -> Optional[str]:
        for segment in re.split(r'\s*(?:&&|;)\s*', command):
            tokens = _tokens(segment)
            if not tokens or tokens[0] not in ("useradd", "adduser") or user not in tokens:
                continue
            for flag in ("-d", "--home-dir", "--home", "-h"):
                if flag in tokens and tokens.index(flag) + 1 < len(tokens):
                    return tokens[tokens.index(flag) + 1]
        return None

    @staticmethod
    def _command(arguments: List[str]) -> List[str]:
        """
        Turns a RUN into an argument list, wrapping it in a shell only when needed.
        """
        if len(arguments) > 1:
            return list(arguments)
        command = " ".join(arguments).strip()
        if not command:
            raise ConfigError("Builder stage ends with an empty RUN")
        if any(c in _SHELL_META for c in command):
            return ["/bin/sh", "-c", command]
        return command.split()
