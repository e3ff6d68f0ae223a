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
Shared fixtures: an in-memory container engine and a minimal base inventory.
"""
import copy
import logging
import os
import pytest
import structlog

from slimpipe.MODELS.artifact import BaseInventory
from slimpipe.PARSERS.dockerfile_parser import DockerfileParser
from slimpipe.RUNNERS.container_engine import EngineError
from slimpipe.RUNNERS.dependency_resolver import ElfLinkage
from slimpipe.RUNNERS.process_runner import CommandResult, CommandTimeout
from slimpipe.PARSERS.config_parser import ConfigParser

DEBIAN_BASE = {
    "/", "/bin", "/etc", "/home", "/lib", "/lib64", "/tmp", "/usr", "/usr/bin", "/usr/lib",
    "/usr/sbin", "/usr/sbin/useradd", "/bin/sh", "/bin/chmod",
    "/lib/x86_64-linux-gnu", "/usr/lib/x86_64-linux-gnu",
    "/lib/x86_64-linux-gnu/libc.so.6", "/lib/x86_64-linux-gnu/libm.so.6",
    "/lib/x86_64-linux-gnu/libpthread.so.0", "/lib/x86_64-linux-gnu/libdl.so.2",
    "/lib/x86_64-linux-gnu/libgcc_s.so.1", "/lib64/ld-linux-x86-64.so.2",
}

LDD_REPORT = """\
\tlinux-vdso.so.1 (0x00007ffc8a1f2000)
\tlibssl.so.1.1 => /usr/lib/x86_64-linux-gnu/libssl.so.1.1 (0x00007f1c2a000000)
\tlibcrypto.so.1.1 => /usr/lib/x86_64-linux-gnu/libcrypto.so.1.1 (0x00007f1c29c00000)
\tlibz.so.1 => /lib/x86_64-linux-gnu/libz.so.1 (0x00007f1c29b00000)
\tlibgcc_s.so.1 => /lib/x86_64-linux-gnu/libgcc_s.so.1 (0x00007f1c29a00000)
\tlibc.so.6 => /lib/x86_64-linux-gnu/libc.so.6 (0x00007f1c29800000)
\t/lib64/ld-linux-x86-64.so.2 (0x00007f1c2a200000)
"""

LINKAGE = {
    "qbitun": ElfLinkage(needed=["libssl.so.1.1", "libz.so.1", "libgcc_s.so.1", "libc.so.6"],
                         interpreter="/lib64/ld-linux-x86-64.so.2"),
    "libssl.so.1.1": ElfLinkage(needed=["libcrypto.so.1.1", "libc.so.6"]),
    "libcrypto.so.1.1": ElfLinkage(needed=["libz.so.1", "libc.so.6"]),
    "libz.so.1": ElfLinkage(needed=["libc.so.6"]),
}

PUSH_DIGEST = "sha256:" + "ab" * 32


def fake_reader(linkage=None):
    linkage = LINKAGE if linkage is None else linkage

    def read(path):
        return linkage.get(os.path.basename(path))
    return read


class FakeEngine:
    """
    In-memory stand-in for the container engine CLI.
    """

    def __init__(self, executable="docker"):
        self.executable = executable
        self.config_dir = None
        self.calls = []
        # image -> {path: bytes}
        self.images = {}
        # image -> inspect document
        self.configs = {}
        self.build_exit = {}
        self.builder_files = {
            "/app/target/release/qbitun": b"\x7fELF-qbitun",
            "/usr/lib/x86_64-linux-gnu/libssl.so.1.1": b"ssl",
            "/usr/lib/x86_64-linux-gnu/libcrypto.so.1.1": b"crypto",
            "/lib/x86_64-linux-gnu/libz.so.1": b"zlib",
            "/lib/x86_64-linux-gnu/libgcc_s.so.1": b"gcc_s",
            "/lib/x86_64-linux-gnu/libc.so.6": b"libc",
            "/lib64/ld-linux-x86-64.so.2": b"ld",
        }
        self.ldd_report = LDD_REPORT
        self.base_files = {"debian:bullseye-slim": set(DEBIAN_BASE)}
        self.base_links = {}
        self.run_handler = None
        self.valid_token = "s3cret"
        self.push_exit = 0
        self.push_output = ""
        self.registry = {}
        self.logged_in = {}
        self.dockerfiles = {}

    def with_config_dir(self, config_dir):
        self.config_dir = config_dir
        return self

    # Images

    def build(self, context_dir, tag, dockerfile=None, build_args=None):
        dockerfile = dockerfile or os.path.join(context_dir, "Dockerfile")
        with open(dockerfile) as f:
            text = f.read()
        self.calls.append(("build", tag))
        self.dockerfiles[tag] = text
        for prefix, code in self.build_exit.items():
            if tag.startswith(prefix) and code != 0:
                return CommandResult(["docker", "build"], code, "", "error: could not compile `qbitun`")

        recipe = DockerfileParser().parse_from_string(text)
        final = recipe.final
        if tag.startswith("slimpipe-builder-"):
            self.images[tag] = dict(self.builder_files)
        else:
            files = {p: b"" for p in self.base_files.get(final.base, set())}
            for inst in final.find("COPY"):
                src, dest = inst.arguments[0], inst.arguments[-1]
                with open(os.path.join(context_dir, src), "rb") as f:
                    files[dest] = f.read()
            self.images[tag] = files
        user = final.last("USER")
        cmd = final.last("CMD")
        entrypoint = final.last("ENTRYPOINT")
        self.configs[tag] = {"Config": {
            "User": user.arguments[0] if user else "",
            "Cmd": cmd.arguments if cmd else None,
            "Entrypoint": entrypoint.arguments if entrypoint else None,
        }}
        return CommandResult(["docker", "build"], 0, "built", "")

    def inspect(self, image):
        return self.configs.get(image)

    def tag(self, source, target):
        if source not in self.images:
            raise EngineError(f"No such image: {source}")
        self.calls.append(("tag", source, target))
        self.images[target] = self.images[source]
        self.configs[target] = self.configs[source]

    def remove_image(self, image):
        self.calls.append(("rmi", image))
        self.images.pop(image, None)
        self.configs.pop(image, None)
        return True

    # Containers

    def run(self, image, command=None, user=None, entrypoint=None, network=None, timeout=None):
        self.calls.append(("run", image, tuple(command or [])))
        if self.run_handler:
            result = self.run_handler(self, image, command or [])
            if result is not None:
                return result
        if command and command[0] == "ldd":
            return CommandResult(["docker", "run"], 0, self.ldd_report, "")
        if command and command[0].startswith("./") and image in self.images:
            missing = self.missing_library(image)
            if missing:
                return CommandResult(["docker", "run"], 127, "",
                                     f"{command[0]}: error while loading shared libraries: {missing}: "
                                     "cannot open shared object file: No such file or directory")
            return CommandResult(["docker", "run"], 0, "qbitun 0.1.0\n", "")
        return CommandResult(["docker", "run"], 0, "ok\n", "")

    def missing_library(self, image):
        """Emulates the dynamic loader: the first needed soname absent from the image."""
        names = {os.path.basename(path) for path in self.images[image]}
        pending = list(LINKAGE["qbitun"].needed)
        seen = set()
        while pending:
            soname = pending.pop(0)
            if soname in seen:
                continue
            seen.add(soname)
            if soname not in names:
                return soname
            pending.extend(LINKAGE.get(soname, ElfLinkage(needed=[])).needed)
        return None

    def copy_from_image(self, image, source, dest):
        content = self.images.get(image, {}).get(source)
        if content is None:
            return False
        with open(dest, "wb") as f:
            f.write(content)
        return True

    def list_files(self, image):
        if image in self.base_files:
            return set(self.base_files[image])
        if image in self.images:
            paths = set()
            for path in self.images[image]:
                while path and path != "/":
                    paths.add(path)
                    path = os.path.dirname(path)
            return paths | {"/"}
        raise EngineError(f"No such image: {image}")

    def list_tree(self, image):
        return self.list_files(image), dict(self.base_links.get(image, {}))

    # Registry

    def login(self, registry, username, secret):
        self.calls.append(("login", registry, username))
        if secret != self.valid_token:
            return CommandResult(["docker", "login"], 1, "",
                                 "Error response from daemon: Get \"https://ghcr.io/v2/\": denied: denied")
        self.logged_in[registry] = self.config_dir
        return CommandResult(["docker", "login"], 0, "Login Succeeded", "")

    def logout(self, registry):
        self.calls.append(("logout", registry))
        self.logged_in.pop(registry, None)

    def push(self, reference):
        self.calls.append(("push", reference))
        if self.push_exit:
            return CommandResult(["docker", "push"], self.push_exit, "", self.push_output)
        self.registry[reference] = dict(self.images[reference])
        tag = reference.rsplit(":", 1)[-1]
        return CommandResult(["docker", "push"], 0, f"{tag}: digest: {PUSH_DIGEST} size: 1234\n", "")

    def pushed(self):
        return [c[1] for c in self.calls if c[0] == "push"]


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def debian_inventory():
    return BaseInventory(image="debian:bullseye-slim", paths=frozenset(DEBIAN_BASE))


@pytest.fixture
def qbitun_source(tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "Cargo.toml").write_text("[package]\nname = \"qbitun\"\n")
    return source


class FakeSlimTool:
    """
    Stands in for the slimming tool's process: copies the target image to
    the requested tag, dropping ``drop`` and adding ``add``.
    """

    def __init__(self, engine):
        self.engine = engine
        self.commands = []
        self.drop = set()
        self.add = {}
        self.exit_code = 0
        self.hang = False
        self.user = None

    def run(self, command, timeout=None, **kwargs):
        self.commands.append((list(command), timeout))
        if self.hang:
            raise CommandTimeout(command, timeout, "tracing container...")
        if self.exit_code:
            return CommandResult(list(command), self.exit_code, "", "cmd=build state=error")
        source = command[command.index("--target") + 1]
        tag = command[command.index("--tag") + 1]
        files = {p: c for p, c in self.engine.images[source].items() if p not in self.drop}
        files.update(self.add)
        self.engine.images[tag] = files
        config = copy.deepcopy(self.engine.configs[source])
        if self.user is not None:
            config["Config"]["User"] = self.user
        self.engine.configs[tag] = config
        return CommandResult(list(command), 0, "cmd=build state=completed", "")


@pytest.fixture
def slim_tool(engine, monkeypatch):
    tool = FakeSlimTool(engine)
    monkeypatch.setattr("slimpipe.RUNNERS.slim_runner.ProcessRunner", lambda name=None, **kwargs: tool)
    return tool


PIPELINE_YAML = """\
build:
  name: qbitun
  toolchain_image: debian:bullseye-slim
  packages: [curl, build-essential, pkg-config, libssl-dev]
  setup_commands:
    - curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y --default-toolchain nightly
  env:
    PATH: /root/.cargo/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin
  source_dir: src
  command: cargo build --release
  output: /app/target/release/qbitun
runtime:
  base_image: debian:bullseye-slim
  user: qbitun
  artifact_name: app
slimming:
  enabled: {slim}
  observation_window: 30
publish:
  registry: ghcr.io
  repository: Owner/QBitun
  tag: latest
"""


@pytest.fixture
def make_config(tmp_path, qbitun_source):
    """Returns a factory for the qbitun pipeline configuration."""
    def make(slim=False, **sections):
        content = PIPELINE_YAML.replace("{slim}", "true" if slim else "false")
        return ConfigParser(context={}).parse_from_string(content, base_dir=str(tmp_path),
                                                          overrides=sections)
    return make


@pytest.fixture
def ldd_report():
    return LDD_REPORT


@pytest.fixture
def elf_reader():
    """Returns a factory for fake ELF readers keyed by file basename."""
    return fake_reader


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo any logging configuration a test (or a CLI invocation) applied."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
