"""Buffered, append-only audit ledger.

Events are redacted, stamped with the ledger's correlation id and the
current actor, then buffered. The buffer is flushed when it reaches
``buffer_size`` or as soon as a failed event arrives. A flush always writes
the local NDJSON file first; forwarding to CloudWatch Logs is best effort.
"""

from __future__ import annotations

import logging
import socket
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.audit.compliance import compliance_for_service, detect_violations
from aws_agent_broker.audit.models import (
    AuditActor,
    AuditEvent,
    AuditOperation,
    AuditQuery,
    AuditResult,
    AuditSinkStatus,
    ComplianceReport,
    ComplianceSummary,
    EventContext,
)
from aws_agent_broker.audit.sinks import CloudWatchLogsSink, LocalAuditFile
from aws_agent_broker.credentials.context import ContextChange, CredentialContext
from aws_agent_broker.errors import AuditWriteError, BrokerError
from aws_agent_broker.utils.masking import redact_sensitive_fields
from aws_agent_broker.utils.serialization import to_plain
from aws_agent_broker.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], "CredentialContext | None"]

_TRAIL_LOOKBACK = timedelta(hours=24)
_TRAIL_MAX_RESULTS = 50


class AuditLedger:
    def __init__(
        self,
        local: LocalAuditFile,
        *,
        context_provider: ContextProvider,
        remote: CloudWatchLogsSink | None = None,
        trail_client_provider: Callable[[], Any] | None = None,
        buffer_size: int = 100,
        default_limit: int = 1000,
        correlation_id: str | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._context_provider = context_provider
        self._trail_client_provider = trail_client_provider
        self._buffer_size = buffer_size
        self._default_limit = default_limit
        self.correlation_id = correlation_id or f"corr-{uuid.uuid4().hex}"
        self._host = socket.gethostname()
        self._buffer: list[AuditEvent] = []
        self._lock = threading.RLock()

    def __enter__(self) -> "AuditLedger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.flush_buffer()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # ------------------------------------------------------------------
    # Recording

    def _actor(self, session_id: str | None = None) -> AuditActor:
        try:
            context = self._context_provider()
        except BrokerError:
            context = None
        if context is None:
            return AuditActor(kind="unknown", identity="unknown", session_id=session_id)
        return AuditActor(
            kind=context.kind,
            identity=context.identity.arn if context.identity else "unknown",
            session_id=session_id or context.session_name,
        )

    def log_event(
        self,
        event_type: str,
        service: str,
        action: str,
        *,
        success: bool,
        resources: Iterable[str] = (),
        parameters: Mapping[str, Any] | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
        response_data: Any = None,
        session_id: str | None = None,
        request_id: str | None = None,
        actor: AuditActor | None = None,
    ) -> AuditEvent:
        """Build, buffer and (when due) flush one event.

        Raises:
            AuditWriteError: If a triggered flush cannot write the local file.
        """
        event = AuditEvent(
            id=f"audit-{uuid.uuid4().hex}",
            timestamp=utc_now(),
            event_type=event_type,
            actor=actor or self._actor(session_id),
            operation=AuditOperation(
                service=service,
                action=action,
                resources=tuple(resources),
                parameters=redact_sensitive_fields(to_plain(dict(parameters or {}))),
            ),
            result=AuditResult(
                success=success,
                error_message=error_message,
                error_code=error_code,
                response_data=(
                    redact_sensitive_fields(to_plain(response_data))
                    if response_data is not None
                    else None
                ),
            ),
            context=EventContext(
                correlation_id=self.correlation_id,
                request_id=request_id,
                host=self._host,
            ),
            compliance=compliance_for_service(service),
        )
        with self._lock:
            self._buffer.append(event)
            due = not success or len(self._buffer) >= self._buffer_size
            if due:
                self.flush_buffer()
        logger.debug("Audit event logged: %s %s success=%s", event_type, action, success)
        return event

    def log_credential_switch(
        self,
        from_kind: str | None,
        to_kind: str,
        success: bool,
        error: str | None = None,
        action: str = "switch-context",
    ) -> AuditEvent:
        return self.log_event(
            "credential-switch",
            "sts",
            action,
            success=success,
            parameters={"fromContext": from_kind, "toContext": to_kind},
            error_message=error,
        )

    def log_role_assumption(
        self,
        role_arn: str,
        session_name: str | None,
        success: bool,
        error: str | None = None,
        *,
        error_code: str | None = None,
        privilege: str | None = None,
        reused_session: bool = False,
    ) -> AuditEvent:
        return self.log_event(
            "role-assumption",
            "sts",
            "assume-role",
            success=success,
            resources=[role_arn],
            parameters={
                "roleArn": role_arn,
                "sessionName": session_name,
                "privilege": privilege,
                "reusedSession": reused_session,
            },
            error_message=error,
            error_code=error_code,
            session_id=session_name,
        )

    def log_aws_operation(
        self,
        service: str,
        action: str,
        resources: Iterable[str],
        parameters: Mapping[str, Any] | None,
        success: bool,
        error: str | None = None,
        *,
        error_code: str | None = None,
        response_data: Any = None,
    ) -> AuditEvent:
        return self.log_event(
            "aws-operation",
            service,
            action,
            success=success,
            resources=resources,
            parameters=parameters,
            error_message=error,
            error_code=error_code,
            response_data=response_data,
        )

    def log_permission_request(
        self,
        operation: str,
        actions: Iterable[str],
        resources: Iterable[str],
        justification: str,
        request_id: str,
        status: str,
        *,
        method: str = "manual-approval",
        risk: str | None = None,
        success: bool = True,
        error: str | None = None,
        error_code: str | None = None,
    ) -> AuditEvent:
        resource_list = list(resources)
        return self.log_event(
            "permission-request",
            "iam",
            "request-permissions",
            success=success,
            resources=resource_list,
            parameters={
                "operation": operation,
                "actions": list(actions),
                "justification": justification,
                "requestId": request_id,
                "status": status,
                "method": method,
                "risk": risk,
            },
            error_message=error,
            error_code=error_code,
            request_id=request_id,
        )

    def on_context_change(self, change: ContextChange) -> None:
        """Store listener: records switches and restores as credential-switch events.

        Role assumptions are recorded by the elevator, which knows the role's
        privilege classification.
        """
        if change.action == "assume-role":
            return
        self.log_credential_switch(
            change.previous.kind if change.previous else None,
            change.target_kind,
            change.success,
            change.error,
            action="switch-context" if change.action == "switch" else "restore-context",
        )

    # ------------------------------------------------------------------
    # Flushing

    def flush_buffer(self) -> int:
        """Write buffered events locally, then forward them remotely.

        Returns the number of events flushed.

        Raises:
            AuditWriteError: If the local write fails; the batch stays buffered.
        """
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer
            self._buffer = []
            try:
                self._local.append(batch)
            except AuditWriteError:
                self._buffer = batch + self._buffer
                logger.error("Local audit write failed; %d events kept in buffer", len(batch))
                raise

        if self._remote is not None:
            try:
                self._remote.forward(batch)
            except (ClientError, BotoCoreError, BrokerError) as exc:
                logger.warning(
                    "Failed to forward %d audit events to %s: %s",
                    len(batch),
                    self._remote.log_group,
                    exc,
                )
        logger.debug("Flushed %d audit events", len(batch))
        return len(batch)

    # ------------------------------------------------------------------
    # Reading

    def query_events(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        """Events matching every filter in ``query``, oldest first.

        Remote events replace local ones with the same id.
        """
        query = query or AuditQuery()
        self.flush_buffer()

        merged: dict[str, AuditEvent] = {
            event.id: event for event in self._local.read() if query.matches(event)
        }
        if self._remote is not None:
            try:
                remote_events = self._remote.query(query)
            except (ClientError, BotoCoreError, BrokerError) as exc:
                logger.warning("Remote audit query failed, using local log only: %s", exc)
                remote_events = []
            for event in remote_events:
                if query.matches(event):
                    merged[event.id] = event

        events = sorted(merged.values(), key=lambda event: ensure_utc(event.timestamp))
        limit = query.limit if query.limit is not None else self._default_limit
        return events[:limit]

    def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        events = self.query_events(AuditQuery(start_time=start, end_time=end))
        summary = ComplianceSummary(
            total_events=len(events),
            human_actions=sum(1 for e in events if e.actor.kind == "human"),
            agent_actions=sum(1 for e in events if e.actor.kind == "agent"),
            errors=sum(1 for e in events if not e.result.success),
            permission_requests=sum(1 for e in events if e.event_type == "permission-request"),
        )
        return ComplianceReport(
            report_id=f"report-{uuid.uuid4().hex}",
            generated_at=utc_now(),
            period_start=start,
            period_end=end,
            summary=summary,
            events=tuple(events),
            violations=tuple(detect_violations(events)),
        )

    def verify_external_audit_sink(self) -> AuditSinkStatus:
        """Check that CloudTrail has recorded activity in the last 24 hours."""
        if self._trail_client_provider is None:
            return AuditSinkStatus(is_configured=False, errors=("CloudTrail client not configured",))
        end = utc_now()
        try:
            client = self._trail_client_provider()
            response = client.lookup_events(
                StartTime=end - _TRAIL_LOOKBACK,
                EndTime=end,
                MaxResults=_TRAIL_MAX_RESULTS,
            )
        except (ClientError, BotoCoreError, BrokerError) as exc:
            return AuditSinkStatus(
                is_configured=False,
                errors=(f"CloudTrail verification failed: {exc}",),
            )
        events = response.get("Events", [])
        times = [ensure_utc(e["EventTime"]) for e in events if e.get("EventTime")]
        return AuditSinkStatus(
            is_configured=True,
            recent_events=len(events),
            last_event_time=max(times) if times else None,
        )
