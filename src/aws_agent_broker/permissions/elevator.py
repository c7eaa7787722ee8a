"""Permission elevation: role assumption, direct use, or manual approval.

Strategies are tried in a fixed order:

1. If the role catalog has a matching role, assume it (reusing a cached
   session when one is still valid).
2. If no role matches and the operation is not high risk, and direct use is
   enabled, simulate the operation's actions against the current principal.
3. Otherwise create a pending permission request and return a
   ``manual-approval`` result with ``success=False``.

High-risk operations never take the direct path.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.credentials.client_factory import ClientFactory
from aws_agent_broker.credentials.sources import sanitize_session_name
from aws_agent_broker.credentials.store import CredentialContextStore
from aws_agent_broker.domain.operations import OperationContext
from aws_agent_broker.errors import ElevationDenied, OperationCancelled, RoleAssumptionError
from aws_agent_broker.permissions.models import (
    PERMISSION_PATTERNS,
    ElevationResult,
    PermissionPattern,
    PermissionRequest,
)
from aws_agent_broker.permissions.risk import RiskLevel, classify_risk, classify_role_privilege
from aws_agent_broker.roles.catalog import Role, RoleCatalog, RoleMatch
from aws_agent_broker.roles.sessions import RoleSession
from aws_agent_broker.utils.cancellation import CancellationToken, check_cancelled
from aws_agent_broker.utils.time import utc_now

if TYPE_CHECKING:
    from aws_agent_broker.audit.ledger import AuditLedger

logger = logging.getLogger(__name__)


def principal_arn(identity_arn: str) -> str:
    """Map an STS assumed-role ARN to its IAM role ARN for policy simulation."""
    if ":assumed-role/" not in identity_arn:
        return identity_arn
    prefix, _, rest = identity_arn.partition(":assumed-role/")
    role_name = rest.split("/", 1)[0]
    account_part = prefix.replace(":sts:", ":iam:")
    return f"{account_part}:role/{role_name}"


class PermissionElevator:
    def __init__(
        self,
        store: CredentialContextStore,
        catalog: RoleCatalog,
        factory: ClientFactory,
        ledger: "AuditLedger",
        *,
        allow_direct: bool = False,
        request_ttl_seconds: int = 86_400,
        role_prefix: str = "agent",
        privilege_tag_key: str = "agent:privilege",
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._factory = factory
        self._ledger = ledger
        self._allow_direct = allow_direct
        self._request_ttl = timedelta(seconds=request_ttl_seconds)
        self._role_prefix = role_prefix
        self._privilege_tag_key = privilege_tag_key
        self._requests: dict[str, PermissionRequest] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Elevation

    def elevate_permissions(
        self,
        context: OperationContext,
        cancel_token: CancellationToken | None = None,
    ) -> ElevationResult:
        """Try each strategy in turn.

        Raises:
            OperationCancelled: If ``cancel_token`` fires; a failed
                permission-request event is recorded first.
        """
        try:
            return self._elevate(context, cancel_token)
        except OperationCancelled as exc:
            pattern = PERMISSION_PATTERNS.get(context.operation)
            self._ledger.log_permission_request(
                context.operation,
                pattern.required_actions if pattern else ("*",),
                context.resources or ("*",),
                f"Elevation for {context.operation} on {context.service} was cancelled.",
                self._new_request_id(),
                "cancelled",
                method="none",
                risk=classify_risk(context),
                success=False,
                error=str(exc),
                error_code=exc.code,
            )
            raise

    def _elevate(
        self,
        context: OperationContext,
        cancel_token: CancellationToken | None,
    ) -> ElevationResult:
        check_cancelled(cancel_token, "elevation")
        self._catalog.cleanup_expired_sessions()
        self.cleanup_expired_requests()

        risk = classify_risk(context)
        logger.info("Elevating permissions for %s (risk=%s)", context.key, risk)

        try:
            ranked = self._catalog.rank_roles(context)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Role discovery failed for %s: %s", context.key, exc)
            ranked = []

        failures: list[str] = []
        alternatives = tuple(match.role.name for match in ranked[1:])

        if ranked:
            check_cancelled(cancel_token, "role assumption")
            try:
                return self._assume(ranked[0], context, risk)
            except RoleAssumptionError as exc:
                failures.append(str(exc))
        elif risk == "high":
            failures.append("No matching role for a high-risk operation")
        elif self._allow_direct:
            check_cancelled(cancel_token, "direct permission check")
            try:
                return self._try_direct(context, risk)
            except ElevationDenied as exc:
                failures.append(str(exc))
        else:
            failures.append("No matching role found")

        check_cancelled(cancel_token, "permission request")
        return self._request_manual_approval(context, risk, alternatives, failures)

    def _assume(self, match: RoleMatch, context: OperationContext, risk: RiskLevel) -> ElevationResult:
        role = match.role
        privilege = classify_role_privilege(role.name, role.tags, self._privilege_tag_key)

        origin = self._store.get_current_context()
        cached = self._catalog.get_session(role.arn, origin.kind)
        if cached is not None:
            try:
                self._store.adopt_session(cached)
            except RoleAssumptionError as exc:
                logger.info("Cached session for %s rejected, assuming again: %s", role.name, exc)
            else:
                self._ledger.log_role_assumption(
                    role.arn, cached.session_name, True, privilege=privilege, reused_session=True
                )
                return self._role_result(role, context, risk, cached)

        session_name = sanitize_session_name(
            f"{self._role_prefix}-{context.operation}-{int(time.time())}"
        )
        try:
            assumed = self._store.assume_role(role.arn, session_name)
        except RoleAssumptionError as exc:
            self._ledger.log_role_assumption(
                role.arn,
                session_name,
                False,
                str(exc),
                error_code=exc.code,
                privilege=privilege,
            )
            raise

        credentials = self._store.get_current_credentials()
        session = RoleSession(
            role_arn=role.arn,
            session_name=assumed.session_name or session_name,
            credentials=credentials,
            expires_at=credentials.expiration
            or utc_now() + timedelta(seconds=role.max_session_duration),
            origin_kind=origin.kind,
            origin_arn=origin.identity.arn if origin.identity else None,
        )
        self._catalog.register_session(session)
        self._ledger.log_role_assumption(role.arn, session.session_name, True, privilege=privilege)
        return self._role_result(role, context, risk, session)

    @staticmethod
    def _role_result(
        role: Role, context: OperationContext, risk: RiskLevel, session: RoleSession
    ) -> ElevationResult:
        return ElevationResult(
            success=True,
            method="role-assumption",
            message=f"Assumed role {role.name} for {context.operation}",
            risk=risk,
            role_arn=role.arn,
            session=session,
        )

    def _try_direct(self, context: OperationContext, risk: RiskLevel) -> ElevationResult:
        pattern = PERMISSION_PATTERNS.get(context.operation)
        if pattern is None:
            raise ElevationDenied(
                f"No known action set for {context.operation}; cannot verify direct access",
                "unknown_actions",
            )
        identity = self._store.get_current_context().identity
        if identity is None:
            raise ElevationDenied("Current context has no verified identity", "no_identity")

        iam = self._factory.get_client("iam")
        try:
            response = iam.simulate_principal_policy(
                PolicySourceArn=principal_arn(identity.arn),
                ActionNames=list(pattern.required_actions),
                ResourceArns=list(context.resources) or ["*"],
            )
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise ElevationDenied(
                f"Policy simulation failed: {error.get('Message', exc)}",
                error.get("Code", "simulation_failed"),
            ) from exc
        except BotoCoreError as exc:
            raise ElevationDenied(f"Policy simulation failed: {exc}", "simulation_failed") from exc

        denied = [
            result["EvalActionName"]
            for result in response.get("EvaluationResults", [])
            if result.get("EvalDecision") != "allowed"
        ]
        if denied:
            raise ElevationDenied(
                f"Current identity is not allowed: {', '.join(denied)}", "implicit_deny"
            )

        request_id = self._new_request_id()
        self._ledger.log_permission_request(
            context.operation,
            pattern.required_actions,
            context.resources,
            "Current identity already holds the required actions",
            request_id,
            "granted",
            method="direct",
            risk=risk,
        )
        return ElevationResult(
            success=True,
            method="direct",
            message=f"Current identity can perform {context.operation}",
            risk=risk,
            request_id=request_id,
        )

    # ------------------------------------------------------------------
    # Permission requests

    @staticmethod
    def _new_request_id() -> str:
        return f"req-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

    def _resource_patterns(self, pattern: PermissionPattern | None) -> tuple[str, ...]:
        if pattern is None:
            return ()
        return tuple(p.format(prefix=self._role_prefix) for p in pattern.resource_patterns)

    @staticmethod
    def _justification(
        context: OperationContext,
        pattern: PermissionPattern | None,
        failures: list[str],
    ) -> str:
        parts = [f"Agent requires permissions to perform {context.operation} on {context.service}."]
        if pattern is not None:
            parts.append(f"This operation typically requires: {', '.join(pattern.required_actions)}.")
        if context.resources:
            parts.append(f"Target resources: {', '.join(context.resources)}.")
        if failures:
            parts.append(f"Automatic elevation failed: {'; '.join(failures)}.")
        return " ".join(parts)

    def _request_manual_approval(
        self,
        context: OperationContext,
        risk: RiskLevel,
        alternatives: tuple[str, ...],
        failures: list[str],
    ) -> ElevationResult:
        pattern = PERMISSION_PATTERNS.get(context.operation)
        now = utc_now()
        request = PermissionRequest(
            id=self._new_request_id(),
            operation=context.operation,
            service=context.service,
            actions=pattern.required_actions if pattern else ("*",),
            resources=context.resources or self._resource_patterns(pattern) or ("*",),
            justification=self._justification(context, pattern, failures),
            requested_at=now,
            expires_at=now + self._request_ttl,
            risk=risk,
        )
        with self._lock:
            self._requests[request.id] = request

        self._ledger.log_permission_request(
            request.operation,
            request.actions,
            request.resources,
            request.justification,
            request.id,
            request.status,
            risk=risk,
        )
        logger.info("Permission request %s created for %s", request.id, context.key)

        message = (
            f"Manual approval required for {context.operation} ({risk} risk); "
            f"permission request {request.id} created"
        )
        if failures:
            message += f": {failures[-1]}"
        return ElevationResult(
            success=False,
            method="manual-approval",
            message=message,
            alternatives=alternatives,
            risk=risk,
            request_id=request.id,
        )

    def get_permission_request(self, request_id: str) -> PermissionRequest | None:
        with self._lock:
            return self._requests.get(request_id)

    def list_permission_requests(self, status: str | None = None) -> list[PermissionRequest]:
        with self._lock:
            requests = list(self._requests.values())
        if status is not None:
            requests = [r for r in requests if r.status == status]
        return sorted(requests, key=lambda r: r.requested_at)

    def _decide(self, request_id: str, status: str, decided_by: str, reason: str | None) -> bool:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != "pending":
                return False
            if request.is_expired():
                request.status = "expired"
                return False
            request.status = status  # type: ignore[assignment]
            request.decided_by = decided_by
            request.decided_at = utc_now()
            request.reason = reason
        self._ledger.log_permission_request(
            request.operation,
            request.actions,
            request.resources,
            request.justification,
            request.id,
            status,
            risk=request.risk,
        )
        logger.info("Permission request %s %s by %s", request_id, status, decided_by)
        return True

    def approve_permission_request(self, request_id: str, approved_by: str) -> bool:
        """Record approval; the original operation is not resumed."""
        return self._decide(request_id, "approved", approved_by, None)

    def deny_permission_request(
        self, request_id: str, denied_by: str, reason: str | None = None
    ) -> bool:
        return self._decide(request_id, "denied", denied_by, reason)

    def cleanup_expired_requests(self) -> int:
        """Drop requests whose TTL has passed; returns how many were removed."""
        now = utc_now()
        with self._lock:
            expired = [rid for rid, req in self._requests.items() if req.is_expired(now)]
            for rid in expired:
                del self._requests[rid]
        if expired:
            logger.info("Removed %d expired permission requests", len(expired))
        return len(expired)

    def get_request_statistics(self) -> dict[str, int]:
        with self._lock:
            requests = list(self._requests.values())
        stats = {"total": len(requests), "pending": 0, "approved": 0, "denied": 0, "expired": 0}
        for request in requests:
            stats[request.status] += 1
        return stats
