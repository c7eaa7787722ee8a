"""Credential context records.

A ``CredentialContext`` is the verified identity the broker is currently
acting as. Instances are frozen; every switch or role assumption produces a
new one rather than mutating the current one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Mapping

from aws_agent_broker.utils.masking import mask_identifier

ContextKind = Literal["human", "agent"]
CONTEXT_KINDS: tuple[ContextKind, ...] = ("human", "agent")

ChangeAction = Literal["switch", "assume-role", "restore"]


@dataclass(frozen=True)
class Identity:
    """Result of an STS GetCallerIdentity call."""

    arn: str
    account_id: str
    principal_id: str

    @classmethod
    def from_caller_identity(cls, response: Mapping[str, object]) -> "Identity":
        return cls(
            arn=str(response.get("Arn", "")),
            account_id=str(response.get("Account", "")),
            principal_id=str(response.get("UserId", "")),
        )

    @property
    def is_assumed_role(self) -> bool:
        return ":assumed-role/" in self.arn


@dataclass(frozen=True)
class AWSCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None
    expiration: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"AWSCredentials(access_key_id={mask_identifier(self.access_key_id, 8)}, "
            f"expiration={self.expiration.isoformat() if self.expiration else None})"
        )

    def session_kwargs(self) -> dict[str, str | None]:
        """Keyword arguments for ``boto3.Session``."""
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
        }


@dataclass(frozen=True)
class CredentialContext:
    kind: ContextKind
    identity: Identity | None = None
    session_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    role_arn: str | None = None
    session_name: str | None = None

    @property
    def is_role_session(self) -> bool:
        return self.role_arn is not None


@dataclass(frozen=True)
class ContextSnapshot:
    """Exact copy of a context plus the credentials it was verified with."""

    context: CredentialContext
    credentials: AWSCredentials


@dataclass(frozen=True)
class ContextChange:
    """Notification delivered to store listeners after every change attempt."""

    action: ChangeAction
    target_kind: ContextKind
    previous: CredentialContext | None
    current: CredentialContext | None
    success: bool
    error: str | None = None
    role_arn: str | None = None


@dataclass(frozen=True)
class CredentialStatus:
    """Summary returned by ``CredentialContextStore.get_credential_status``."""

    initialized: bool
    current_kind: ContextKind | None
    identity: Identity | None
    valid: bool
    sources: dict[str, str] = field(default_factory=dict)
    expires_at: datetime | None = None
