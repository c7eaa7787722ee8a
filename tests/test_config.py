from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from aws_agent_broker import config


@pytest.fixture
def no_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


def test_env_int_uses_default_for_blank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VALUE", "")
    assert config._env_int("TEST_INT_VALUE", 7) == 7


def test_env_int_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_INVALID", "not_a_number")
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_INVALID", "not_a_float")
    assert config._env_float("TEST_FLOAT_INVALID", 2.5) == 2.5


@pytest.mark.parametrize(("raw", "expected"), [("1", True), ("Yes", True), ("false", False), ("0", False)])
def test_env_bool(monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("TEST_BOOL", raw)
    assert config._env_bool("TEST_BOOL", not expected) is expected


def test_defaults(no_dotenv, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in config.ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("AWS_REGION", raising=False)

    settings = config.load_settings()

    assert settings.deployment.poll_interval_seconds == 30.0
    assert settings.deployment.max_poll_attempts == 60
    assert settings.elevation.allow_direct is False
    assert settings.roles.name_prefix == "agent"
    assert settings.audit.log_group is None
    assert settings.audit.log_path.endswith("audit.ndjson")


def test_env_overrides(no_dotenv, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_REGION", "eu-west-1")
    monkeypatch.setenv("ELEVATION_ALLOW_DIRECT", "true")
    monkeypatch.setenv("DEPLOY_POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("BROKER_AUDIT_LOG_GROUP", "/agent/audit")

    settings = config.load_settings()

    assert settings.aws.default_region == "eu-west-1"
    assert settings.elevation.allow_direct is True
    assert settings.deployment.poll_interval_seconds == 5.0
    assert settings.audit.log_group == "/agent/audit"


def test_settings_are_cached(no_dotenv) -> None:
    assert config.load_settings() is config.load_settings()


def test_invalid_configuration_raises_runtime_error(no_dotenv, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BROKER_AUDIT_BUFFER_SIZE", "0")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_poll_interval_cap_must_cover_interval() -> None:
    with pytest.raises(ValidationError):
        config.DeploymentSettings(poll_interval_seconds=60, max_poll_interval_seconds=30)


class TestAgentConfig:
    def test_profile_form(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "credentials": {"profile": "agent", "region": "us-west-2"},
                    "audit": {"logGroupName": "/agent/audit"},
                }
            )
        )

        loaded = config.load_agent_config(path)

        assert loaded.credentials.profile == "agent"
        assert loaded.credentials.region == "us-west-2"
        assert loaded.audit.log_group_name == "/agent/audit"

    def test_key_form_with_role(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "credentials": {
                        "accessKeyId": "AKIAAGENT0000001",
                        "secretAccessKey": "secret",
                        "roleArn": "arn:aws:iam::123456789012:role/agent-base",
                    }
                }
            )
        )

        loaded = config.load_agent_config(path)

        assert loaded.credentials.access_key_id == "AKIAAGENT0000001"
        assert loaded.credentials.role_arn == "arn:aws:iam::123456789012:role/agent-base"
        assert "secret" not in repr(loaded.credentials)

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            config.load_agent_config(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{")

        with pytest.raises(RuntimeError, match="Invalid agent config"):
            config.load_agent_config(path)

    @pytest.mark.parametrize(
        "credentials",
        [
            {},
            {"region": "us-east-1"},
            {"accessKeyId": "AKIA"},
            {"profile": "agent", "accessKeyId": "AKIA", "secretAccessKey": "s"},
        ],
    )
    def test_rejects_ambiguous_credentials(self, tmp_path, credentials) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"credentials": credentials}))

        with pytest.raises(RuntimeError, match="Invalid agent config"):
            config.load_agent_config(path)
