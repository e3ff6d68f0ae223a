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
Unit tests for the slimming stage.
"""
import pytest

from slimpipe.MODELS.runtime_image import RuntimeIdentity, RuntimeImage, ImageFile
from slimpipe.MODELS.slimming_policy import SlimmingPolicy
from slimpipe.RUNNERS.process_runner import CommandResult
from slimpipe.RUNNERS.slim_runner import SlimRunner
from slimpipe.errors import SlimmingError


@pytest.fixture
def image(engine):
    engine.images["slimpipe-qbitun:run1"] = {
        "/home/qbitun/app": b"app",
        "/usr/lib/x86_64-linux-gnu/libssl.so.1.1": b"ssl",
        "/usr/bin/perl": b"perl",
        "/usr/share/doc/readme": b"doc",
    }
    engine.configs["slimpipe-qbitun:run1"] = {"Config": {"User": "qbitun", "Cmd": ["./app"], "Entrypoint": None}}
    return RuntimeImage(
        reference="slimpipe-qbitun:run1",
        base_image="debian:bullseye-slim",
        files=[ImageFile(source="/tmp/app", target="/home/qbitun/app", owned_by_user=True)],
        identity=RuntimeIdentity(user="qbitun"),
        working_dir="/home/qbitun",
        entry_command=["./app"],
    )


class TestSlimRunner:
    """Tests for SlimRunner."""

    def test_command(self, engine, image):
        """Test the slimming tool invocation."""
        runner = SlimRunner(engine, SlimmingPolicy(observation_window=30))
        assert runner.command(image, "slimpipe-qbitun:run1-slim") == [
            "slim", "build", "--http-probe=false", "--continue-after=30",
            "--tag", "slimpipe-qbitun:run1-slim", "--target", "slimpipe-qbitun:run1",
        ]

    def test_slim_reduces_file_set(self, engine, image, slim_tool):
        """Test a successful slimming pass."""
        slim_tool.drop = {"/usr/bin/perl", "/usr/share/doc/readme"}
        slimmed = SlimRunner(engine, SlimmingPolicy()).slim(image, "slimpipe-qbitun:run1-slim")
        assert slimmed.slimmed
        assert slimmed.reference == "slimpipe-qbitun:run1-slim"
        assert slimmed.identity == image.identity
        assert "/usr/bin/perl" not in engine.images["slimpipe-qbitun:run1-slim"]

    def test_timeout_bound(self, engine, image, slim_tool):
        """Test that the whole invocation is bounded by window plus grace."""
        SlimRunner(engine, SlimmingPolicy(observation_window=10, grace_period=5)).slim(image, "t:slim")
        assert slim_tool.commands[0][1] == 15

    def test_timeout(self, engine, image, slim_tool):
        """Test that a hung tool is a SlimmingError."""
        slim_tool.hang = True
        with pytest.raises(SlimmingError):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")

    def test_tool_failure(self, engine, image, slim_tool):
        """Test that a non-zero tool exit is a SlimmingError."""
        slim_tool.exit_code = 1
        with pytest.raises(SlimmingError) as exc:
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")
        assert "state=error" in exc.value.detail

    def test_tool_missing(self, engine, image, monkeypatch):
        """Test that a missing slimming tool is a SlimmingError."""
        def missing(self, command, **kwargs):
            raise FileNotFoundError(command[0])
        monkeypatch.setattr("slimpipe.RUNNERS.process_runner.ProcessRunner.run", missing)
        with pytest.raises(SlimmingError):
            SlimRunner(engine, SlimmingPolicy(tool="slim-not-installed")).slim(image, "t:slim")

    def test_file_set_must_not_grow(self, engine, image, slim_tool):
        """Test that an output with files the input lacked is rejected."""
        slim_tool.add = {"/opt/sensor/agent": b"x"}
        with pytest.raises(SlimmingError):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")

    def test_identity_must_survive(self, engine, image, slim_tool):
        """Test that an output running as another user is rejected."""
        slim_tool.user = "root"
        with pytest.raises(SlimmingError):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")

    def test_empty_user_rejected(self, engine, image, slim_tool):
        """Test that an output with no configured user (so running as root) is rejected."""
        slim_tool.user = ""
        with pytest.raises(SlimmingError, match="root"):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")

    def test_uid_zero_rejected(self, engine, image, slim_tool):
        slim_tool.user = "0:0"
        with pytest.raises(SlimmingError, match="root"):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")

    def test_numeric_uid_accepted(self, engine, image, slim_tool):
        """Test that the declared numeric uid is accepted in place of the user name."""
        image = image.model_copy(update={"identity": RuntimeIdentity(user="qbitun", uid=1001)})
        slim_tool.user = "1001"
        slimmed = SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim")
        assert slimmed.reference == "t:slim"

    def test_smoke_comparison(self, engine, image, slim_tool):
        """Test that the smoke command must behave the same after slimming."""
        def smoke(eng, ref, command):
            if ref.endswith("slim"):
                return CommandResult(["docker", "run"], 1, "", "missing /etc/ssl/certs")
            return CommandResult(["docker", "run"], 0, "qbitun 0.1.0\n", "")
        engine.run_handler = smoke
        with pytest.raises(SlimmingError):
            SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim", smoke_command=["./app", "--version"])

    def test_identical_smoke_passes(self, engine, image, slim_tool):
        """Test that the smoke command runs against both images and identical results pass."""
        seen = []

        def smoke(eng, ref, command):
            seen.append(ref)
            return CommandResult(["docker", "run"], 0, "qbitun 0.1.0\n", "")
        engine.run_handler = smoke
        SlimRunner(engine, SlimmingPolicy()).slim(image, "t:slim", smoke_command=["./app", "--version"])
        assert seen == ["slimpipe-qbitun:run1", "t:slim"]
