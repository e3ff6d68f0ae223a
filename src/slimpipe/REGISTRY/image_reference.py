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
Image reference parsing and handling.
Parses references like 'app:latest' or 'ghcr.io/owner/project:v1'.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace

_TAG = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - app -> docker.io/library/app:latest
        - owner/app:v1 -> docker.io/owner/app:v1
        - ghcr.io/Owner/App -> ghcr.io/owner/app:latest
        - localhost:5000/app@sha256:abc -> localhost:5000/app@sha256:abc
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string.

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or its tag is malformed.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        # A colon after the last slash introduces a tag; before it, a registry port
        tag = None
        last_slash = reference.rfind("/")
        last_colon = reference.rfind(":")
        if last_colon > last_slash:
            reference, tag = reference[:last_colon], reference[last_colon + 1:]
            if not _TAG.match(tag):
                raise ValueError(f"Invalid tag '{tag}'")

        parts = reference.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        # Registries require lowercase repository paths
        return cls(registry=registry, repository=repository.lower(), tag=tag, digest=digest)

    @classmethod
    def for_target(cls, registry: str, repository: str, tag: str) -> "ImageReference":
        return cls.parse(f"{registry}/{repository}:{tag}")

    def with_tag(self, tag: str) -> "ImageReference":
        return replace(self, tag=tag, digest=None)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    def __str__(self) -> str:
        return self.full_name
