"""Credential sources for the human and agent contexts.

Each context kind owns exactly one source, chosen once at startup. A source
only knows how to produce key material; identity verification is the
store's job.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from aws_agent_broker.config import AgentCredentialConfig
from aws_agent_broker.credentials.context import AWSCredentials
from aws_agent_broker.errors import CredentialSourceError, RoleAssumptionError

logger = logging.getLogger(__name__)

_STS_CONFIG = Config(connect_timeout=5, read_timeout=15, retries={"max_attempts": 2})

# STS error code -> broker error code
_ASSUME_ROLE_CODE_MAP = {
    "AccessDenied": "access_denied",
    "MalformedPolicyDocument": "policy_error",
    "PackedPolicyTooLarge": "policy_too_large",
    "RegionDisabledException": "region_disabled",
    "ExpiredTokenException": "token_expired",
    "ExpiredToken": "token_expired",
    "InvalidClientTokenId": "invalid_credentials",
    "ValidationError": "invalid_request",
}


def sanitize_session_name(name: str) -> str:
    """Clamp a session name to the STS character set and 2..64 length."""
    sanitized = re.sub(r"[^a-zA-Z0-9=,.@-]", "-", name)
    sanitized = sanitized[:64]
    if len(sanitized) < 2:
        sanitized = sanitized.ljust(2, "-")
    return sanitized


def default_session_name(prefix: str = "agent") -> str:
    return sanitize_session_name(f"{prefix}-session-{int(time.time() * 1000)}")


def sts_client(credentials: AWSCredentials, region: str) -> Any:
    session = boto3.Session(region_name=region, **credentials.session_kwargs())
    return session.client("sts", config=_STS_CONFIG)


def assume_role_credentials(
    credentials: AWSCredentials,
    role_arn: str,
    session_name: str,
    *,
    region: str,
    duration_seconds: int = 3600,
) -> AWSCredentials:
    """Call STS AssumeRole with ``credentials`` and return the temporary keys.

    Raises:
        RoleAssumptionError: with a mapped ``code`` when STS rejects the call.
    """
    safe_session_name = sanitize_session_name(session_name)
    try:
        response = sts_client(credentials, region).assume_role(
            RoleArn=role_arn,
            RoleSessionName=safe_session_name,
            DurationSeconds=duration_seconds,
        )
    except ClientError as exc:
        error_code = exc.response.get("Error", {}).get("Code", "Unknown")
        error_message = exc.response.get("Error", {}).get("Message", str(exc))
        logger.warning(
            "AssumeRole failed: role=%s, session=%s, error=%s: %s",
            role_arn,
            safe_session_name,
            error_code,
            error_message,
        )
        raise RoleAssumptionError(
            role_arn, error_message, _ASSUME_ROLE_CODE_MAP.get(error_code, "sts_error")
        ) from exc
    except BotoCoreError as exc:
        raise RoleAssumptionError(role_arn, str(exc), "sts_unavailable") from exc

    creds = response["Credentials"]
    return AWSCredentials(
        access_key_id=creds["AccessKeyId"],
        secret_access_key=creds["SecretAccessKey"],
        session_token=creds["SessionToken"],
        expiration=creds.get("Expiration"),
    )


def _frozen_from_session(session: boto3.Session, description: str) -> AWSCredentials:
    try:
        found = session.get_credentials()
    except (BotoCoreError, ClientError) as exc:
        raise CredentialSourceError(f"{description}: {exc}") from exc
    if found is None:
        raise CredentialSourceError(f"{description}: no credentials found", "no_credentials")
    frozen = found.get_frozen_credentials()
    return AWSCredentials(
        access_key_id=frozen.access_key,
        secret_access_key=frozen.secret_key,
        session_token=frozen.token,
    )


class CredentialSource:
    """Produces credentials for one context kind."""

    def __init__(self, region: str) -> None:
        self.region = region

    def resolve(self) -> AWSCredentials:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"


class EnvironmentSource(CredentialSource):
    """boto3's default chain: environment variables, then shared config files."""

    def resolve(self) -> AWSCredentials:
        return _frozen_from_session(boto3.Session(region_name=self.region), "environment")

    def describe(self) -> str:
        return "environment"


class ProfileSource(CredentialSource):
    def __init__(self, profile: str, region: str) -> None:
        super().__init__(region)
        self.profile = profile

    def resolve(self) -> AWSCredentials:
        try:
            session = boto3.Session(profile_name=self.profile, region_name=self.region)
        except ProfileNotFound as exc:
            raise CredentialSourceError(
                f"profile {self.profile!r} not found", "profile_not_found"
            ) from exc
        return _frozen_from_session(session, f"profile {self.profile!r}")

    def describe(self) -> str:
        return f"profile:{self.profile}"


class StaticKeySource(CredentialSource):
    def __init__(self, credentials: AWSCredentials, region: str) -> None:
        super().__init__(region)
        self._credentials = credentials

    def resolve(self) -> AWSCredentials:
        return self._credentials

    def describe(self) -> str:
        return f"static:{self._credentials.access_key_id[:4]}***"


class AssumeRoleSource(CredentialSource):
    """Wraps another source and assumes ``role_arn`` on every resolve."""

    def __init__(
        self,
        base: CredentialSource,
        role_arn: str,
        *,
        sts_region: str,
        duration_seconds: int = 3600,
    ) -> None:
        super().__init__(base.region)
        self.base = base
        self.role_arn = role_arn
        self._sts_region = sts_region
        self._duration_seconds = duration_seconds

    def resolve(self) -> AWSCredentials:
        base_credentials = self.base.resolve()
        try:
            return assume_role_credentials(
                base_credentials,
                self.role_arn,
                default_session_name(),
                region=self._sts_region,
                duration_seconds=self._duration_seconds,
            )
        except RoleAssumptionError as exc:
            raise CredentialSourceError(str(exc), exc.code) from exc

    def describe(self) -> str:
        return f"{self.base.describe()}+role:{self.role_arn}"


def human_source(profile: str | None, region: str) -> CredentialSource:
    if profile:
        return ProfileSource(profile, region)
    return EnvironmentSource(region)


def agent_source(config: AgentCredentialConfig, *, sts_region: str) -> CredentialSource:
    """Build the agent's source from the ``credentials`` block of its config file."""
    base: CredentialSource
    if config.profile:
        base = ProfileSource(config.profile, config.region)
    else:
        base = StaticKeySource(
            AWSCredentials(
                access_key_id=config.access_key_id or "",
                secret_access_key=config.secret_access_key or "",
                session_token=config.session_token,
            ),
            config.region,
        )
    if config.role_arn:
        return AssumeRoleSource(base, config.role_arn, sts_region=sts_region)
    return base
