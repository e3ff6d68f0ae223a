"""
Resolution of an artifact's shared library dependencies against a minimal base.
"""
from typing import Callable, List, NamedTuple, Optional, Dict

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile

from ..MODELS.artifact import Artifact, BaseInventory, DependencySet, SharedLibrary
from ..UTILS.log_config import get_logger
from ..errors import UnresolvedDependencyError
from .container_engine import ContainerEngine

log = get_logger(__name__, stage="resolve")


class ElfLinkage(NamedTuple):
    """The dynamic linkage of one ELF file."""
    needed: List[str]
    interpreter: Optional[str] = None


def read_elf_linkage(path: str) -> Optional[ElfLinkage]:
    """
    Reads DT_NEEDED entries and the PT_INTERP interpreter of an ELF file.

    :return: The linkage, or None if the file is not an ELF file.
    """
    try:
        with open(path, "rb") as f:
            elf = ELFFile(f)
            interpreter = None
            for segment in elf.iter_segments():
                if segment.header.p_type == "PT_INTERP":
                    interpreter = segment.get_interp_name()
            needed = []
            for section in elf.iter_sections():
                if isinstance(section, DynamicSection):
                    needed.extend(tag.needed for tag in section.iter_tags() if tag.entry.d_tag == "DT_NEEDED")
            return ElfLinkage(needed=needed, interpreter=interpreter)
    except ELFError:
        return None


def probe_base(engine: ContainerEngine, base_image: str) -> BaseInventory:
    """
    Lists the files of the minimal base once so that library and directory
    lookups need no further engine calls.
    """
    paths, links = engine.list_tree(base_image)
    log.info("resolve.base_probed", image=base_image, files=len(paths), links=len(links))
    return BaseInventory(image=base_image, paths=frozenset(paths), links=links)


class DependencyResolver:
    """
    Resolves the transitive shared library set an artifact needs at runtime.
    """
    def __init__(self, reader: Callable[[str], Optional[ElfLinkage]] = read_elf_linkage):
        """
        :param reader: Returns the linkage of a file, or None for non-ELF files.
        """
        self.reader = reader

    def resolve(self, artifact: Artifact, inventory: BaseInventory) -> DependencySet:
        """
        Walks the artifact's dependencies depth-first.

        Libraries the base already provides are excluded from the copy set;
        every other library must have been staged by the Build Stage.

        :param artifact: The staged artifact with its loader report.
        :param inventory: File set of the target minimal base.
        :return: The libraries to copy and the sonames the base provides.
        :raises UnresolvedDependencyError: If a library is in neither place.
        """
        linkage = self.reader(artifact.path)
        if linkage is None:
            log.warning("resolve.not_elf", artifact=artifact.name)
            return DependencySet()

        copy_set: Dict[str, SharedLibrary] = {}
        provided: List[str] = []
        visited = set()

        def visit(soname: str, required_by: str):
            """
            Recursive function for the transitive closure.
            """
            if soname in visited:
                return
            visited.add(soname)

            base_path = inventory.provides(soname)
            if base_path:
                provided.append(soname)
                return

            lib = artifact.library(soname) or artifact.library(soname.rsplit("/", 1)[-1])
            if lib is None or not lib.found:
                raise UnresolvedDependencyError(
                    f"{required_by} needs {soname}, which is neither in the build output nor in {inventory.image}",
                    soname=soname,
                )
            copy_set[lib.soname] = lib

            child = self.reader(lib.staged_path)
            if child is None:
                return
            for dep in child.needed:
                visit(dep, lib.soname)

        if linkage.interpreter:
            visit(linkage.interpreter, artifact.name)
        for soname in linkage.needed:
            visit(soname, artifact.name)

        deps = DependencySet(copy_set=list(copy_set.values()), provided=provided)
        log.info("resolve.done", copy=deps.sonames, provided=len(provided))
        return deps
