"""
Models for the compiled artifact and its shared library dependencies.
"""
import posixpath
from collections import deque
from typing import Dict, List, Optional, FrozenSet
from pydantic import BaseModel, ConfigDict


class SharedLibrary(BaseModel):
    """
    One entry of the loader report taken inside the builder.
    """
    model_config = ConfigDict(frozen=True)

    soname: str
    build_path: Optional[str] = None  # None when the loader reported "not found"
    staged_path: Optional[str] = None  # host copy taken before the builder was discarded

    @property
    def found(self) -> bool:
        return self.build_path is not None and self.staged_path is not None


class Artifact(BaseModel):
    """
    The single executable produced by the Build Stage, staged on the host.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    source_path: str
    digest: str
    libraries: List[SharedLibrary] = []

    def library(self, soname: str) -> Optional[SharedLibrary]:
        for lib in self.libraries:
            if lib.soname == soname:
                return lib
        return None


class DependencySet(BaseModel):
    """
    The resolved runtime dependencies of an artifact against a given base.
    """
    model_config = ConfigDict(frozen=True)

    copy_set: List[SharedLibrary] = []
    provided: List[str] = []

    @property
    def sonames(self) -> List[str]:
        return [lib.soname for lib in self.copy_set]


MAX_LINK_HOPS = 40

# Directories searched for shared objects inside a base image
LIBRARY_DIRS = (
    "/lib",
    "/lib64",
    "/usr/lib",
    "/usr/lib64",
    "/usr/local/lib",
    "/lib/x86_64-linux-gnu",
    "/usr/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
)


class BaseInventory(BaseModel):
    """
    The file set of a minimal base image.
    """
    model_config = ConfigDict(frozen=True)

    image: str
    paths: FrozenSet[str] = frozenset()
    # symlink path -> link target, as stored in the image
    links: Dict[str, str] = {}

    def canonical(self, path: str) -> str:
        """
        Resolves ``path`` through the base's symbolic links, so that
        ``/lib64/ld-linux-x86-64.so.2`` on a merged-/usr base becomes
        ``/usr/lib64/ld-linux-x86-64.so.2``.
        """
        parts = deque(p for p in posixpath.normpath(path).split("/") if p)
        resolved = "/"
        hops = 0
        while parts:
            candidate = posixpath.normpath(posixpath.join(resolved, parts.popleft()))
            target = self.links.get(candidate)
            if target is None:
                resolved = candidate
                continue
            hops += 1
            if hops > MAX_LINK_HOPS:
                return posixpath.normpath(path)
            target = posixpath.normpath(posixpath.join(resolved, target))
            parts.extendleft(reversed([p for p in target.split("/") if p]))
            resolved = "/"
        return resolved

    def has_path(self, path: str) -> bool:
        path = posixpath.normpath(path)
        return path in self.paths or self.canonical(path) in self.paths

    def has_dir(self, path: str) -> bool:
        path = posixpath.normpath(path)
        return path == "/" or self.canonical(path) == "/" or self.has_path(path)

    def provides(self, soname: str) -> Optional[str]:
        """
        Returns the path at which the base provides ``soname``, if any.
        """
        if soname.startswith("/"):
            if self.has_path(soname):
                return soname
            return self.provides(posixpath.basename(soname))
        for directory in LIBRARY_DIRS:
            candidate = f"{directory}/{soname}"
            if self.has_path(candidate):
                return candidate
        return None
