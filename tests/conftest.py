from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError

from aws_agent_broker.audit.ledger import AuditLedger
from aws_agent_broker.audit.sinks import LocalAuditFile
from aws_agent_broker.config import Settings, _load_settings_cached
from aws_agent_broker.credentials.client_factory import ClientFactory
from aws_agent_broker.credentials.context import AWSCredentials
from aws_agent_broker.credentials.sources import StaticKeySource
from aws_agent_broker.credentials.store import CredentialContextStore
from aws_agent_broker.utils.time import utc_now

ACCOUNT_ID = "123456789012"
HUMAN_KEY = "AKIAHUMAN0000001"
AGENT_KEY = "AKIAAGENT0000001"
HUMAN_ARN = f"arn:aws:iam::{ACCOUNT_ID}:user/operator"
AGENT_ARN = f"arn:aws:iam::{ACCOUNT_ID}:user/agent"
HUMAN_CREDENTIALS = AWSCredentials(HUMAN_KEY, "human-secret")
AGENT_CREDENTIALS = AWSCredentials(AGENT_KEY, "agent-secret")


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeSTS:
    def __init__(self, aws: "FakeAWS", access_key: str | None) -> None:
        self._aws = aws
        self._access_key = access_key

    def get_caller_identity(self):
        self._aws.calls.append(("GetCallerIdentity", self._access_key))
        arn = self._aws.identities.get(self._access_key)
        if arn is None:
            raise client_error(
                "InvalidClientTokenId",
                "The security token included in the request is invalid.",
                "GetCallerIdentity",
            )
        return {"Arn": arn, "Account": ACCOUNT_ID, "UserId": f"AID-{self._access_key}"}

    def assume_role(self, RoleArn, RoleSessionName, DurationSeconds=3600):
        self._aws.calls.append(("AssumeRole", self._access_key, RoleArn))
        if RoleArn in self._aws.denied_roles:
            raise client_error(
                "AccessDenied",
                f"User is not authorized to perform: sts:AssumeRole on resource: {RoleArn}",
                "AssumeRole",
            )
        self._aws.assume_count += 1
        key = f"ASIATEMP{self._aws.assume_count:04d}"
        role_name = RoleArn.rsplit("/", 1)[-1]
        self._aws.identities[key] = (
            f"arn:aws:sts::{ACCOUNT_ID}:assumed-role/{role_name}/{RoleSessionName}"
        )
        return {
            "Credentials": {
                "AccessKeyId": key,
                "SecretAccessKey": "temp-secret",
                "SessionToken": f"token-{key}",
                "Expiration": utc_now() + timedelta(seconds=DurationSeconds),
            }
        }


class FakeSession:
    def __init__(
        self,
        aws: "FakeAWS",
        aws_access_key_id=None,
        aws_secret_access_key=None,
        aws_session_token=None,
        region_name=None,
        profile_name=None,
    ) -> None:
        self._aws = aws
        self.access_key = aws_access_key_id
        self.region_name = region_name
        self.profile_name = profile_name

    def client(self, service, config=None):
        self._aws.built.append((service, self.access_key, self.region_name))
        if service == "sts":
            return FakeSTS(self._aws, self.access_key)
        if service in self._aws.services:
            return self._aws.services[service]
        return MagicMock(name=f"{service}-client")

    def get_credentials(self):
        return None


class FakeAWS:
    """Stands in for ``boto3.Session``; STS identities are keyed by access key."""

    def __init__(self) -> None:
        self.identities: dict[str | None, str] = {HUMAN_KEY: HUMAN_ARN, AGENT_KEY: AGENT_ARN}
        self.denied_roles: set[str] = set()
        self.services: dict[str, object] = {}
        self.built: list[tuple[str, str | None, str | None]] = []
        self.calls: list[tuple] = []
        self.assume_count = 0

    def session(self, **kwargs) -> FakeSession:
        return FakeSession(self, **kwargs)

    def revoke(self, access_key: str) -> None:
        self.identities.pop(access_key, None)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    _load_settings_cached.cache_clear()
    yield
    _load_settings_cached.cache_clear()


@pytest.fixture
def fake_aws(monkeypatch: pytest.MonkeyPatch) -> FakeAWS:
    aws = FakeAWS()
    monkeypatch.setattr(boto3, "Session", aws.session)
    return aws


@pytest.fixture
def store(fake_aws: FakeAWS) -> CredentialContextStore:
    return CredentialContextStore(
        StaticKeySource(HUMAN_CREDENTIALS, "us-east-1"),
        StaticKeySource(AGENT_CREDENTIALS, "us-east-1"),
    )


@pytest.fixture
def factory(store: CredentialContextStore) -> ClientFactory:
    return ClientFactory(store, default_region="us-east-1")


@pytest.fixture
def audit_path(tmp_path: Path) -> Path:
    return tmp_path / "audit" / "audit.ndjson"


@pytest.fixture
def ledger(audit_path: Path, store: CredentialContextStore) -> AuditLedger:
    return AuditLedger(
        LocalAuditFile(audit_path),
        context_provider=store.get_current_context,
        correlation_id="corr-test",
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings.model_validate(
        {
            "agent": {"config_path": str(tmp_path / "agent.json")},
            "audit": {"log_path": str(tmp_path / "audit" / "audit.ndjson")},
            "deployment": {
                "poll_interval_seconds": 0.01,
                "max_poll_attempts": 5,
                "max_poll_interval_seconds": 0.01,
            },
            "clients": {"validate_cached": False},
        }
    )
