"""Configuration management for the agent credential broker."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class AWSSettings(BaseModel):
    default_region: str = Field(default="us-east-1")
    sts_region: str = Field(default="us-east-1")
    human_profile: str | None = Field(
        default=None,
        description="Named profile for the human operator; environment chain when unset",
    )


class AgentSettings(BaseModel):
    config_path: str = Field(default="./.agent/config.json")


class AuditSettings(BaseModel):
    log_path: str = Field(default="./.agent/audit/audit.ndjson")
    buffer_size: int = Field(default=100, ge=1, le=10_000)
    log_group: str | None = Field(default=None, description="CloudWatch Logs group for forwarding")
    log_stream: str | None = Field(default=None)
    default_query_limit: int = Field(default=1000, ge=1)


class RoleSettings(BaseModel):
    name_prefix: str = Field(default="agent")
    path_prefix: str = Field(default="/")
    operation_tag_key: str = Field(default="agent:operations")
    privilege_tag_key: str = Field(default="agent:privilege")
    session_duration_seconds: int = Field(default=3600, ge=900, le=43_200)
    session_refresh_buffer_seconds: int = Field(default=300, ge=0, le=3600)
    session_cache_max_entries: int = Field(default=100, ge=1, le=10_000)
    fetch_tags: bool = Field(default=True)


class ElevationSettings(BaseModel):
    allow_direct: bool = Field(
        default=False,
        description="Try the current identity (IAM policy simulation) before manual approval",
    )
    request_ttl_seconds: int = Field(default=86_400, ge=60)


class DeploymentSettings(BaseModel):
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    max_poll_attempts: int = Field(default=60, ge=1)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    max_poll_interval_seconds: float = Field(default=300.0, gt=0)
    stack_name_prefix: str = Field(default="agent-")
    template_key_prefix: str = Field(default="templates")

    @model_validator(mode="after")
    def _check_interval_cap(self) -> "DeploymentSettings":
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            raise ValueError("max_poll_interval_seconds must be >= poll_interval_seconds")
        return self


class ClientSettings(BaseModel):
    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    max_attempts: int = Field(default=3, ge=1, le=10)
    validate_cached: bool = Field(
        default=True,
        description="Probe cached clients with a cheap call before handing them out",
    )


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    roles: RoleSettings = Field(default_factory=RoleSettings)
    elevation: ElevationSettings = Field(default_factory=ElevationSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    clients: ClientSettings = Field(default_factory=ClientSettings)


class AgentCredentialConfig(BaseModel):
    """``credentials`` block of the agent config file.

    Exactly one of ``profile`` or an access key pair must be present;
    ``role_arn`` optionally wraps either in an assume-role step.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    profile: str | None = None
    access_key_id: str | None = Field(default=None, alias="accessKeyId")
    secret_access_key: str | None = Field(default=None, alias="secretAccessKey", repr=False)
    session_token: str | None = Field(default=None, alias="sessionToken", repr=False)
    role_arn: str | None = Field(default=None, alias="roleArn")
    region: str = Field(default="us-east-1")

    @model_validator(mode="after")
    def _check_source(self) -> "AgentCredentialConfig":
        has_keys = bool(self.access_key_id and self.secret_access_key)
        if bool(self.access_key_id) != bool(self.secret_access_key):
            raise ValueError("accessKeyId and secretAccessKey must be given together")
        if self.profile and has_keys:
            raise ValueError("Specify either profile or access keys, not both")
        if not self.profile and not has_keys:
            raise ValueError("Agent credentials require a profile or an access key pair")
        return self


class AgentAuditConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    log_group_name: str | None = Field(default=None, alias="logGroupName")
    log_stream_name: str | None = Field(default=None, alias="logStreamName")


class AgentConfigFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    credentials: AgentCredentialConfig
    audit: AgentAuditConfig = Field(default_factory=AgentAuditConfig)

    @field_validator("credentials", mode="before")
    @classmethod
    def _require_credentials(cls, value: object) -> object:
        if not value:
            raise ValueError("'credentials' section is required")
        return value


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "aws_region": "AWS_DEFAULT_REGION",
    "sts_region": "AWS_STS_REGION",
    "human_profile": "BROKER_HUMAN_PROFILE",
    "agent_config_path": "BROKER_AGENT_CONFIG",
    "audit_log_path": "BROKER_AUDIT_LOG",
    "audit_buffer_size": "BROKER_AUDIT_BUFFER_SIZE",
    "audit_log_group": "BROKER_AUDIT_LOG_GROUP",
    "audit_log_stream": "BROKER_AUDIT_LOG_STREAM",
    "role_prefix": "BROKER_ROLE_PREFIX",
    "role_path_prefix": "BROKER_ROLE_PATH_PREFIX",
    "role_session_duration": "BROKER_ROLE_SESSION_DURATION",
    "role_fetch_tags": "BROKER_ROLE_FETCH_TAGS",
    "allow_direct": "ELEVATION_ALLOW_DIRECT",
    "request_ttl": "ELEVATION_REQUEST_TTL_SECONDS",
    "poll_interval": "DEPLOY_POLL_INTERVAL_SECONDS",
    "max_poll_attempts": "DEPLOY_MAX_POLL_ATTEMPTS",
    "backoff_multiplier": "DEPLOY_BACKOFF_MULTIPLIER",
    "max_poll_interval": "DEPLOY_MAX_POLL_INTERVAL_SECONDS",
    "stack_name_prefix": "DEPLOY_STACK_NAME_PREFIX",
    "sdk_timeout": "AWS_SDK_TIMEOUT_SECONDS",
    "max_attempts": "AWS_MAX_ATTEMPTS",
    "validate_cached": "CLIENT_VALIDATE_CACHED",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _resolve_path(path: str) -> str:
    return str(Path(path).expanduser().resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION")
            or os.getenv(ENV_KEYS["aws_region"], AWSSettings().default_region),
            "sts_region": os.getenv(ENV_KEYS["sts_region"], AWSSettings().sts_region),
            "human_profile": os.getenv(ENV_KEYS["human_profile"]) or None,
        },
        "agent": {
            "config_path": _resolve_path(
                os.getenv(ENV_KEYS["agent_config_path"], AgentSettings().config_path)
            ),
        },
        "audit": {
            "log_path": _resolve_path(
                os.getenv(ENV_KEYS["audit_log_path"], AuditSettings().log_path)
            ),
            "buffer_size": _env_int(
                ENV_KEYS["audit_buffer_size"], AuditSettings().buffer_size
            ),
            "log_group": os.getenv(ENV_KEYS["audit_log_group"]) or None,
            "log_stream": os.getenv(ENV_KEYS["audit_log_stream"]) or None,
        },
        "roles": {
            "name_prefix": os.getenv(ENV_KEYS["role_prefix"], RoleSettings().name_prefix),
            "path_prefix": os.getenv(ENV_KEYS["role_path_prefix"], RoleSettings().path_prefix),
            "session_duration_seconds": _env_int(
                ENV_KEYS["role_session_duration"],
                RoleSettings().session_duration_seconds,
            ),
            "fetch_tags": _env_bool(ENV_KEYS["role_fetch_tags"], RoleSettings().fetch_tags),
        },
        "elevation": {
            "allow_direct": _env_bool(
                ENV_KEYS["allow_direct"], ElevationSettings().allow_direct
            ),
            "request_ttl_seconds": _env_int(
                ENV_KEYS["request_ttl"], ElevationSettings().request_ttl_seconds
            ),
        },
        "deployment": {
            "poll_interval_seconds": _env_float(
                ENV_KEYS["poll_interval"], DeploymentSettings().poll_interval_seconds
            ),
            "max_poll_attempts": _env_int(
                ENV_KEYS["max_poll_attempts"], DeploymentSettings().max_poll_attempts
            ),
            "backoff_multiplier": _env_float(
                ENV_KEYS["backoff_multiplier"], DeploymentSettings().backoff_multiplier
            ),
            "max_poll_interval_seconds": _env_float(
                ENV_KEYS["max_poll_interval"],
                DeploymentSettings().max_poll_interval_seconds,
            ),
            "stack_name_prefix": os.getenv(
                ENV_KEYS["stack_name_prefix"], DeploymentSettings().stack_name_prefix
            ),
        },
        "clients": {
            "sdk_timeout_seconds": _env_int(
                ENV_KEYS["sdk_timeout"], ClientSettings().sdk_timeout_seconds
            ),
            "max_attempts": _env_int(ENV_KEYS["max_attempts"], ClientSettings().max_attempts),
            "validate_cached": _env_bool(
                ENV_KEYS["validate_cached"], ClientSettings().validate_cached
            ),
        },
    }

    try:
        return Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc


def load_agent_config(path: str | Path) -> AgentConfigFile:
    """Read and validate the agent's JSON config file.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If the file is not valid JSON or fails validation.
    """
    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Agent config file not found: {config_file}")
    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid agent config {config_file}: {exc}") from exc
    try:
        return AgentConfigFile.model_validate(raw)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid agent config {config_file}: {exc}") from exc
