"""Credential contexts, sources and the client factory."""

from aws_agent_broker.credentials.client_factory import ClientConfig, ClientFactory
from aws_agent_broker.credentials.context import (
    AWSCredentials,
    ContextChange,
    ContextKind,
    CredentialContext,
    Identity,
)
from aws_agent_broker.credentials.sources import (
    AssumeRoleSource,
    CredentialSource,
    EnvironmentSource,
    ProfileSource,
    StaticKeySource,
)
from aws_agent_broker.credentials.store import CredentialContextStore

__all__ = [
    "AWSCredentials",
    "AssumeRoleSource",
    "ClientConfig",
    "ClientFactory",
    "ContextChange",
    "ContextKind",
    "CredentialContext",
    "CredentialContextStore",
    "CredentialSource",
    "EnvironmentSource",
    "Identity",
    "ProfileSource",
    "StaticKeySource",
]
