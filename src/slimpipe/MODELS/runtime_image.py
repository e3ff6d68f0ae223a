"""
Models representing the assembled runtime image and its execution identity.
"""
import posixpath
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

# Targets that would carry a build environment into a runtime image
BUILD_ONLY_PREFIXES = (
    "/root/.cargo",
    "/root/.rustup",
    "/usr/lib/gcc",
    "/usr/libexec/gcc",
    "/var/lib/apt",
    "/var/cache/apt",
    "/usr/share/doc",
)
BUILD_ONLY_BINARIES = {
    "cc", "gcc", "g++", "c++", "clang", "ld", "make", "cargo", "rustc",
    "apt", "apt-get", "dpkg", "apk", "yum", "dnf", "pip",
}

ROOT_USERS = {"", "root", "0", "0:0", "root:root"}


def is_build_only_path(path: str) -> bool:
    """
    Returns True if ``path`` belongs to a compiler, package manager or toolchain.
    """
    path = posixpath.normpath(path)
    for prefix in BUILD_ONLY_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            return True
    directory, name = posixpath.split(path)
    return directory.endswith("/bin") and name in BUILD_ONLY_BINARIES


class RuntimeIdentity(BaseModel):
    """
    The unprivileged user the runtime image executes as by default.
    """
    user: str
    home: Optional[str] = None
    uid: Optional[int] = None

    @field_validator("user")
    @classmethod
    def _not_root(cls, value: str) -> str:
        if value.strip() in ROOT_USERS:
            raise ValueError("runtime identity must not be the root user")
        return value

    @field_validator("uid")
    @classmethod
    def _not_uid_zero(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("runtime identity must not use uid 0")
        return value

    @model_validator(mode="after")
    def _default_home(self) -> "RuntimeIdentity":
        if not self.home:
            self.home = f"/home/{self.user}"
        return self


class RuntimeSpec(BaseModel):
    """
    Describes the minimal base and how the artifact is laid out in it.
    """
    base_image: str
    identity: RuntimeIdentity
    artifact_name: str = "app"
    entry_command: List[str] = []
    smoke_command: List[str] = []
    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _default_entry(self) -> "RuntimeSpec":
        if not self.entry_command:
            self.entry_command = [f"./{self.artifact_name}"]
        return self

    @property
    def artifact_target(self) -> str:
        return posixpath.join(self.identity.home, self.artifact_name)


class ImageFile(BaseModel):
    """
    A single file copied into the runtime image.
    """
    source: str
    target: str
    owned_by_user: bool = False


class RuntimeImage(BaseModel):
    """
    A fully assembled (and possibly slimmed) runtime image.
    """
    reference: str
    base_image: str
    files: List[ImageFile] = []
    identity: RuntimeIdentity
    working_dir: str
    entry_command: List[str]
    slimmed: bool = False
    labels: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _no_build_only_files(self) -> "RuntimeImage":
        for f in self.files:
            if is_build_only_path(f.target):
                raise ValueError(f"build-only path in runtime image: {f.target}")
        return self

    @property
    def file_targets(self) -> List[str]:
        return sorted(f.target for f in self.files)
