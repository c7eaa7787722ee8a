"""Risk and privilege classification for elevation and audit."""

from __future__ import annotations

import re
from typing import Literal, Mapping

from aws_agent_broker.domain.operations import OperationContext

RiskLevel = Literal["low", "medium", "high"]
PrivilegeLevel = Literal["administrative", "standard"]

_HIGH_RISK_SERVICES = frozenset({"iam", "organizations"})
_LOGGING_SERVICES = frozenset({"logs", "cloudwatch", "cloudtrail", "monitoring"})

_HIGH_RISK_PATTERNS = [
    re.compile(r"delete|remove|destroy|terminate|purge", re.IGNORECASE),
    re.compile(
        r"(put|attach|detach|create|update|set|replace)[-_\w]*polic(y|ies)", re.IGNORECASE
    ),
    re.compile(r"pass[-_]?role", re.IGNORECASE),
    re.compile(r"(^|[^a-z])iam([^a-z]|$)", re.IGNORECASE),
]
_MEDIUM_RISK_PATTERNS = [
    re.compile(
        r"create|update|deploy|put|upload|run|modify|write|invoke|publish|start|stop|rollback",
        re.IGNORECASE,
    ),
]
_LOW_RISK_PATTERNS = [
    re.compile(r"^(describe|get|list|read|head|lookup|validate|filter|search|view)", re.IGNORECASE),
    re.compile(r"(^|[-_])(read|readonly|read-only|logs?|monitoring)([-_]|$)", re.IGNORECASE),
]

_ADMIN_ROLE_PATTERN = re.compile(r"admin|poweruser|power-user|fullaccess|full-access|superuser")
_ADMIN_TAG_VALUES = frozenset({"admin", "administrator", "administrative", "privileged", "full"})


def classify_risk(context: OperationContext) -> RiskLevel:
    """IAM, delete and policy mutation are high; writes medium; reads and logging low.

    Anything unrecognized is medium.
    """
    service = context.service.lower()
    operation = context.operation
    if service in _HIGH_RISK_SERVICES:
        return "high"
    if any(pattern.search(operation) for pattern in _HIGH_RISK_PATTERNS):
        return "high"
    if service in _LOGGING_SERVICES:
        return "low"
    if any(pattern.search(operation) for pattern in _MEDIUM_RISK_PATTERNS):
        return "medium"
    if any(pattern.search(operation) for pattern in _LOW_RISK_PATTERNS):
        return "low"
    return "medium"


def classify_role_privilege(
    role_name: str,
    tags: Mapping[str, str] | None = None,
    privilege_tag_key: str = "agent:privilege",
) -> PrivilegeLevel:
    """An explicit privilege tag wins; otherwise fall back to the role name."""
    if tags and privilege_tag_key in tags:
        value = tags[privilege_tag_key].strip().lower()
        return "administrative" if value in _ADMIN_TAG_VALUES else "standard"
    if _ADMIN_ROLE_PATTERN.search(role_name.lower()):
        return "administrative"
    return "standard"
