"""Elevation results and permission requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from aws_agent_broker.permissions.risk import RiskLevel
from aws_agent_broker.roles.sessions import RoleSession
from aws_agent_broker.utils.time import ensure_utc, utc_now

ElevationMethod = Literal["direct", "role-assumption", "manual-approval"]
RequestStatus = Literal["pending", "approved", "denied", "expired"]


@dataclass(frozen=True)
class PermissionPattern:
    operation: str
    required_actions: tuple[str, ...]
    optional_actions: tuple[str, ...] = ()
    resource_patterns: tuple[str, ...] = ()


# ``{prefix}`` is replaced with the configured role name prefix.
PERMISSION_PATTERNS: dict[str, PermissionPattern] = {
    "cloudformation-deploy": PermissionPattern(
        operation="cloudformation-deploy",
        required_actions=(
            "cloudformation:CreateStack",
            "cloudformation:UpdateStack",
            "cloudformation:DescribeStacks",
            "cloudformation:GetTemplate",
        ),
        optional_actions=(
            "cloudformation:DeleteStack",
            "cloudformation:ListStacks",
            "s3:GetObject",
            "s3:PutObject",
        ),
        resource_patterns=(
            "arn:aws:cloudformation:*:*:stack/{prefix}-*/*",
            "arn:aws:s3:::{prefix}-*/*",
        ),
    ),
    "lambda-deploy": PermissionPattern(
        operation="lambda-deploy",
        required_actions=(
            "lambda:CreateFunction",
            "lambda:UpdateFunctionCode",
            "lambda:UpdateFunctionConfiguration",
            "lambda:GetFunction",
        ),
        optional_actions=("lambda:DeleteFunction", "lambda:ListFunctions", "iam:PassRole"),
        resource_patterns=(
            "arn:aws:lambda:*:*:function:{prefix}-*",
            "arn:aws:iam::*:role/{prefix}-*",
        ),
    ),
    "s3-operations": PermissionPattern(
        operation="s3-operations",
        required_actions=("s3:GetObject", "s3:PutObject", "s3:ListBucket"),
        optional_actions=("s3:DeleteObject", "s3:GetBucketLocation", "s3:GetBucketVersioning"),
        resource_patterns=("arn:aws:s3:::{prefix}-*", "arn:aws:s3:::{prefix}-*/*"),
    ),
}


@dataclass(frozen=True)
class ElevationResult:
    success: bool
    method: ElevationMethod
    message: str
    alternatives: tuple[str, ...] = ()
    risk: RiskLevel = "medium"
    role_arn: str | None = None
    request_id: str | None = None
    session: RoleSession | None = field(default=None, repr=False)


@dataclass
class PermissionRequest:
    """A pending ask for a human to grant access.

    Deciding a request only records the decision; nothing is resumed.
    """

    id: str
    operation: str
    service: str
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    justification: str
    requested_at: datetime
    expires_at: datetime
    risk: RiskLevel = "medium"
    status: RequestStatus = "pending"
    decided_by: str | None = None
    decided_at: datetime | None = None
    reason: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utc_now())
