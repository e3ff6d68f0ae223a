"""
Parsers for dynamic loader reports (``ldd`` output).
"""
import re
from typing import List, NamedTuple, Optional

# Kernel-provided objects with no file behind them
VIRTUAL_OBJECTS = ("linux-vdso.so", "linux-gate.so", "linux-vdso64.so")

_ARROW = re.compile(r'^(\S+)\s+=>\s+(.*?)\s*(?:\(0x[0-9a-fA-F]+\))?$')
_DIRECT = re.compile(r'^(/\S+)\s*(?:\(0x[0-9a-fA-F]+\))?$')


class LoaderEntry(NamedTuple):
    """A single library line of a loader report."""
    soname: str
    path: Optional[str]


class LddParser:
    """
    Parser for ``ldd`` output.
    """
    STATIC_MARKERS = ("not a dynamic executable", "statically linked")

    def parse_from_string(self, content: str) -> List[LoaderEntry]:
        """
        Parses a loader report.

        Args:
            content (str): Output of ``ldd <file>``.

        Returns:
            List[LoaderEntry]: One entry per library; ``path`` is None when the
            loader reported it as not found. Static executables yield [].
        """
        entries = []
        seen = set()
        for line in content.splitlines():
            line = line.strip()
            if not line or any(marker in line for marker in self.STATIC_MARKERS):
                continue

            match = _ARROW.match(line)
            if match:
                soname, target = match.group(1), match.group(2).strip()
                path = None if target in ("not found", "") else target
            else:
                match = _DIRECT.match(line)
                if not match:
                    continue
                # The dynamic loader is listed by absolute path only
                path = match.group(1)
                soname = path.rsplit("/", 1)[-1]

            if not soname or soname.startswith(VIRTUAL_OBJECTS) or soname in seen:
                continue
            seen.add(soname)
            entries.append(LoaderEntry(soname=soname, path=path))
        return entries
