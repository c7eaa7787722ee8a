"""Audit event records and their NDJSON wire form.

Events are frozen once built. ``to_dict``/``from_dict`` use camelCase keys,
which is also the format forwarded to CloudWatch Logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping

from aws_agent_broker.utils.time import ensure_utc, parse_timestamp

EventType = Literal[
    "credential-switch",
    "role-assumption",
    "permission-request",
    "aws-operation",
    "error",
]
ActorKind = Literal["human", "agent", "unknown"]
Classification = Literal["public", "internal", "confidential"]
ViolationType = Literal["unauthorized-access", "permission-escalation"]
Severity = Literal["low", "medium", "high", "critical"]


@dataclass(frozen=True)
class AuditActor:
    kind: str
    identity: str
    session_id: str | None = None


@dataclass(frozen=True)
class AuditOperation:
    service: str
    action: str
    resources: tuple[str, ...] = ()
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditResult:
    success: bool
    error_message: str | None = None
    error_code: str | None = None
    response_data: Any = None


@dataclass(frozen=True)
class EventContext:
    correlation_id: str
    request_id: str | None = None
    host: str | None = None


@dataclass(frozen=True)
class ComplianceInfo:
    classification: str = "internal"
    retention_days: int = 365
    encryption_required: bool = True


@dataclass(frozen=True)
class AuditEvent:
    id: str
    timestamp: datetime
    event_type: str
    actor: AuditActor
    operation: AuditOperation
    result: AuditResult
    context: EventContext
    compliance: ComplianceInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": ensure_utc(self.timestamp).isoformat(),
            "eventType": self.event_type,
            "actor": _drop_none(
                {
                    "kind": self.actor.kind,
                    "identity": self.actor.identity,
                    "sessionId": self.actor.session_id,
                }
            ),
            "operation": {
                "service": self.operation.service,
                "action": self.operation.action,
                "resources": list(self.operation.resources),
                "parameters": dict(self.operation.parameters),
            },
            "result": _drop_none(
                {
                    "success": self.result.success,
                    "errorMessage": self.result.error_message,
                    "errorCode": self.result.error_code,
                    "responseData": self.result.response_data,
                }
            ),
            "context": _drop_none(
                {
                    "correlationId": self.context.correlation_id,
                    "requestId": self.context.request_id,
                    "host": self.context.host,
                }
            ),
            "compliance": {
                "classification": self.compliance.classification,
                "retentionDays": self.compliance.retention_days,
                "encryptionRequired": self.compliance.encryption_required,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEvent":
        """Parse one NDJSON record; raises ``KeyError``/``ValueError`` on bad input."""
        actor = data["actor"]
        operation = data["operation"]
        result = data["result"]
        context = data.get("context") or {}
        compliance = data.get("compliance") or {}
        return cls(
            id=str(data["id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            event_type=str(data["eventType"]),
            actor=AuditActor(
                kind=str(actor.get("kind", "unknown")),
                identity=str(actor.get("identity", "unknown")),
                session_id=actor.get("sessionId"),
            ),
            operation=AuditOperation(
                service=str(operation["service"]),
                action=str(operation["action"]),
                resources=tuple(operation.get("resources") or ()),
                parameters=dict(operation.get("parameters") or {}),
            ),
            result=AuditResult(
                success=bool(result["success"]),
                error_message=result.get("errorMessage"),
                error_code=result.get("errorCode"),
                response_data=result.get("responseData"),
            ),
            context=EventContext(
                correlation_id=str(context.get("correlationId", "")),
                request_id=context.get("requestId"),
                host=context.get("host"),
            ),
            compliance=ComplianceInfo(
                classification=str(compliance.get("classification", "internal")),
                retention_days=int(compliance.get("retentionDays", 365)),
                encryption_required=bool(compliance.get("encryptionRequired", True)),
            ),
        )


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class AuditQuery:
    """Filter for ``AuditLedger.query_events``; unset fields do not filter."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    event_types: tuple[str, ...] | None = None
    actor_kinds: tuple[str, ...] | None = None
    services: tuple[str, ...] | None = None
    success: bool | None = None
    limit: int | None = None

    def matches(self, event: AuditEvent) -> bool:
        timestamp = ensure_utc(event.timestamp)
        if self.start_time is not None and timestamp < ensure_utc(self.start_time):
            return False
        if self.end_time is not None and timestamp > ensure_utc(self.end_time):
            return False
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        if self.actor_kinds is not None and event.actor.kind not in self.actor_kinds:
            return False
        if self.services is not None and event.operation.service not in self.services:
            return False
        if self.success is not None and event.result.success != self.success:
            return False
        return True


@dataclass(frozen=True)
class ComplianceViolation:
    id: str
    type: ViolationType
    severity: Severity
    description: str
    event: AuditEvent
    recommendation: str


@dataclass(frozen=True)
class ComplianceSummary:
    total_events: int
    human_actions: int
    agent_actions: int
    errors: int
    permission_requests: int


@dataclass(frozen=True)
class ComplianceReport:
    report_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    summary: ComplianceSummary
    events: tuple[AuditEvent, ...]
    violations: tuple[ComplianceViolation, ...]


@dataclass(frozen=True)
class AuditSinkStatus:
    is_configured: bool
    recent_events: int = 0
    last_event_time: datetime | None = None
    errors: tuple[str, ...] = ()
