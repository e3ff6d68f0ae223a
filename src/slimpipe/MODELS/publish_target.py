"""
Models for registry publication and the per-run credential.
"""
from typing import Optional
from pydantic import BaseModel, SecretStr, field_validator


class RegistryCredential(BaseModel):
    """
    Short-lived registry credential injected for a single run.
    """
    username: str
    token: SecretStr

    def __repr__(self) -> str:
        return f"RegistryCredential(username={self.username!r}, token='**********')"


class PublishSettings(BaseModel):
    """
    Credential-free publication settings as they appear in configuration.
    """
    registry: str = "ghcr.io"
    repository: str
    tag: str = "latest"
    username_env: str = "REGISTRY_USERNAME"
    token_env: str = "REGISTRY_TOKEN"

    @field_validator("repository")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        value = value.strip().strip("/")
        if not value:
            raise ValueError("repository must not be empty")
        return value.lower()

    def target(self, credential: RegistryCredential) -> "PublishTarget":
        return PublishTarget(
            registry=self.registry,
            repository=self.repository,
            tag=self.tag,
            credential=credential,
        )


class PublishTarget(BaseModel):
    """
    Registry host, repository path, tag and the credential to push with.
    """
    registry: str = "ghcr.io"
    repository: str
    tag: str = "latest"
    credential: RegistryCredential

    @field_validator("repository")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().strip("/").lower()

    @property
    def reference(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


class PublishResult(BaseModel):
    """
    Outcome of a successful push.
    """
    reference: str
    digest: Optional[str] = None
