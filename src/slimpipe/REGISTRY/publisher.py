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
Publish Stage: authenticates against a registry with a per-run credential,
tags the image and pushes it.
"""

import re
import shutil
import tempfile
from typing import Optional

from ..MODELS.publish_target import PublishTarget, PublishResult
from ..MODELS.runtime_image import RuntimeImage
from ..RUNNERS.container_engine import ContainerEngine, EngineError
from ..RUNNERS.process_runner import CommandResult
from ..UTILS.log_config import get_logger
from ..errors import AuthError, PushError
from .image_reference import ImageReference

_DIGEST = re.compile(r'digest:\s*(sha256:[0-9a-f]{64})')
_AUTH_FAILURES = (
    "unauthorized",
    "denied",
    "authentication required",
    "incorrect username or password",
    "403 forbidden",
)


class Publisher:
    """
    Pushes a RuntimeImage to a PublishTarget.

    The credential only lives for the duration of ``publish``: the engine is
    pointed at a temporary client configuration that is logged out of and
    deleted afterwards, so nothing is written to a persisted location.
    """

    def __init__(self, engine: ContainerEngine):
        self.engine = engine
        self.log = get_logger(__name__, stage="publish")

    def publish(self, image: RuntimeImage, target: PublishTarget) -> PublishResult:
        """
        Logs in, tags and pushes. Re-pushing an existing tag overwrites it.

        :raises AuthError: If the registry rejects the credential.
        :raises PushError: On transport or registry failure.
        """
        try:
            reference = ImageReference.for_target(target.registry, target.repository, target.tag)
        except ValueError as e:
            raise PushError(f"Invalid publish target: {e}") from e

        config_dir = tempfile.mkdtemp(prefix="slimpipe-auth-")
        engine = self.engine.with_config_dir(config_dir)
        try:
            self._login(engine, target)
            try:
                engine.tag(image.reference, reference.full_name)
            except EngineError as e:
                raise PushError(f"Could not tag {image.reference}: {e}") from e

            self.log.info("publish.push", reference=reference.full_name)
            result = engine.push(reference.full_name)
            if not result.ok:
                if self._is_auth_failure(result):
                    raise AuthError(f"Registry {target.registry} refused the push")
                raise PushError(f"Push of {reference.full_name} failed ({result.returncode})",
                                detail=result.stderr[-2000:])

            digest = self._digest(result)
            self.log.info("publish.done", reference=reference.full_name, digest=digest)
            return PublishResult(reference=reference.full_name, digest=digest)
        finally:
            engine.logout(target.registry)
            shutil.rmtree(config_dir, ignore_errors=True)

    def _login(self, engine: ContainerEngine, target: PublishTarget) -> None:
        credential = target.credential
        self.log.info("publish.login", registry=target.registry, username=credential.username)
        result = engine.login(target.registry, credential.username, credential.token.get_secret_value())
        if result.ok:
            return
        if self._is_auth_failure(result):
            raise AuthError(f"Registry {target.registry} rejected the credential for {credential.username}")
        raise PushError(f"Could not reach registry {target.registry} ({result.returncode})",
                        detail=result.stderr[-2000:])

    @staticmethod
    def _is_auth_failure(result: CommandResult) -> bool:
        text = result.output.lower()
        return any(marker in text for marker in _AUTH_FAILURES)

    @staticmethod
    def _digest(result: CommandResult) -> Optional[str]:
        match = _DIGEST.search(result.stdout)
        return match.group(1) if match else None
