import pytest

from slimpipe.MANAGERS.environment_manager import EnvironmentManager
from slimpipe.MODELS.publish_target import PublishSettings
from slimpipe.UTILS.string_interpolation import EnvironmentInterpolator
from slimpipe.errors import ConfigError


def test_merged_environment_precedence(tmp_path):
    (tmp_path / ".env").write_text("OWNER=from-file\nTAG=v1\n# comment\n")
    (tmp_path / ".env.local").write_text("TAG=v2\n")
    manager = EnvironmentManager(base_dir=str(tmp_path), environ={"OWNER": "from-process"})
    env = manager.get_merged_environment([".env", ".env.local", ".env.missing"], {"EXTRA": "1"})
    assert env["OWNER"] == "from-process"
    assert env["TAG"] == "v2"
    assert env["EXTRA"] == "1"


def test_load_credential_named_variables():
    manager = EnvironmentManager(environ={"REGISTRY_USERNAME": "ci-bot", "REGISTRY_TOKEN": "s3cret"})
    credential = manager.load_credential(PublishSettings(repository="owner/app"))
    assert credential.username == "ci-bot"
    assert credential.token.get_secret_value() == "s3cret"


def test_load_credential_ci_fallbacks():
    manager = EnvironmentManager(environ={"GITHUB_ACTOR": "octocat", "GHCR_TOKEN": "ghp_x"})
    credential = manager.load_credential(PublishSettings(repository="owner/app"))
    assert credential.username == "octocat"
    assert credential.token.get_secret_value() == "ghp_x"


def test_missing_token_is_config_error():
    manager = EnvironmentManager(environ={"REGISTRY_USERNAME": "ci-bot"})
    with pytest.raises(ConfigError) as exc:
        manager.load_credential(PublishSettings(repository="owner/app"))
    assert "REGISTRY_TOKEN" in str(exc.value)


def test_interpolate_default_and_alternate():
    context = {"SET": "yes", "EMPTY": ""}
    assert EnvironmentInterpolator.interpolate("${MISSING:-fallback}", context) == "fallback"
    assert EnvironmentInterpolator.interpolate("${EMPTY:-fallback}", context) == "fallback"
    assert EnvironmentInterpolator.interpolate("${SET:+on}", context) == "on"
    assert EnvironmentInterpolator.interpolate("${MISSING:+on}", context) == ""
    assert EnvironmentInterpolator.interpolate("cost: $$5", context) == "cost: $5"


def test_interpolate_strict():
    with pytest.raises(KeyError):
        EnvironmentInterpolator.interpolate("${MISSING}", {})
    assert EnvironmentInterpolator.interpolate("${MISSING}", {}, strict=False) == ""


def test_missing_variables():
    template = "${A} ${B:-x} ${C} ${A}"
    assert EnvironmentInterpolator.missing(template, {"C": "1"}) == ["A"]
