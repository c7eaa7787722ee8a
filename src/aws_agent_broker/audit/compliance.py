"""Compliance classification tables and violation detection."""

from __future__ import annotations

import re
import uuid
from typing import Iterable

from aws_agent_broker.audit.models import AuditEvent, ComplianceInfo, ComplianceViolation
from aws_agent_broker.permissions.risk import classify_role_privilege

_SERVICE_CLASSIFICATION: dict[str, str] = {
    "iam": "confidential",
    "sts": "confidential",
    "s3": "internal",
    "lambda": "internal",
    "cloudformation": "internal",
}

# Retention in days.
_SERVICE_RETENTION: dict[str, int] = {
    "iam": 2555,
    "sts": 2555,
    "s3": 1095,
    "lambda": 1095,
    "cloudformation": 1095,
}
_DEFAULT_CLASSIFICATION = "internal"
_DEFAULT_RETENTION_DAYS = 365

ACCESS_DENIED_CODES: frozenset[str] = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnauthorizedException",
        "UnauthorizedAccess",
        "AuthorizationError",
        "NotAuthorized",
        "Forbidden",
    }
)
_ACCESS_DENIED_MESSAGE = re.compile(
    r"\b(" + "|".join(sorted(ACCESS_DENIED_CODES, key=len, reverse=True)) + r")\b"
)
# Codes the broker itself assigns when it maps a provider denial.
BROKER_DENIED_CODES: frozenset[str] = frozenset({"access_denied"})


def compliance_for_service(service: str) -> ComplianceInfo:
    key = service.lower()
    return ComplianceInfo(
        classification=_SERVICE_CLASSIFICATION.get(key, _DEFAULT_CLASSIFICATION),
        retention_days=_SERVICE_RETENTION.get(key, _DEFAULT_RETENTION_DAYS),
        encryption_required=True,
    )


def is_access_denied(event: AuditEvent) -> bool:
    if event.result.success:
        return False
    if event.result.error_code:
        code = event.result.error_code
        return code in ACCESS_DENIED_CODES or code in BROKER_DENIED_CODES
    # Events written without a code (older records) still carry the provider text.
    return bool(event.result.error_message and _ACCESS_DENIED_MESSAGE.search(event.result.error_message))


def is_escalation(event: AuditEvent, privilege_tag_key: str = "agent:privilege") -> bool:
    if event.event_type != "role-assumption":
        return False
    recorded = event.operation.parameters.get("privilege")
    if recorded is not None:
        return recorded == "administrative"
    if not event.operation.resources:
        return False
    role_name = event.operation.resources[0].rsplit("/", 1)[-1]
    return classify_role_privilege(role_name, None, privilege_tag_key) == "administrative"


def detect_violations(events: Iterable[AuditEvent]) -> list[ComplianceViolation]:
    violations: list[ComplianceViolation] = []
    for event in events:
        if is_access_denied(event):
            violations.append(
                ComplianceViolation(
                    id=f"violation-{uuid.uuid4().hex[:12]}",
                    type="unauthorized-access",
                    severity="medium",
                    description=f"Unauthorized access attempt: {event.operation.action}",
                    event=event,
                    recommendation=(
                        "Review IAM policies and ensure proper permissions are configured"
                    ),
                )
            )
        if is_escalation(event):
            target = event.operation.resources[0] if event.operation.resources else "unknown"
            violations.append(
                ComplianceViolation(
                    id=f"violation-{uuid.uuid4().hex[:12]}",
                    type="permission-escalation",
                    severity="high",
                    description=f"Administrative role assumption detected: {target}",
                    event=event,
                    recommendation="Use least-privilege roles instead of administrative roles",
                )
            )
    return violations
