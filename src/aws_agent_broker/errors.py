"""Exception taxonomy for the credential broker.

Every exception carries a short machine-readable ``code`` in addition to the
human-readable message, so callers can branch without parsing text.
"""

from __future__ import annotations

from typing import Sequence


class BrokerError(Exception):
    """Base class for all broker failures."""

    default_code = "broker_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class CredentialSourceError(BrokerError):
    """Raised when a credential source cannot produce credentials."""

    default_code = "source_unavailable"


class CredentialLoadError(BrokerError):
    """Raised by ``initialize`` when a context's source cannot be resolved or verified."""

    default_code = "credential_load_failed"

    def __init__(self, kind: str, message: str, code: str | None = None) -> None:
        super().__init__(f"Failed to load {kind} credentials: {message}", code)
        self.kind = kind


class ContextSwitchError(BrokerError):
    default_code = "context_switch_failed"

    def __init__(self, kind: str, message: str, code: str | None = None) -> None:
        super().__init__(f"Failed to switch to {kind} context: {message}", code)
        self.kind = kind


class NoActiveContextError(BrokerError):
    default_code = "no_active_context"


class RoleAssumptionError(BrokerError):
    default_code = "role_assumption_failed"

    def __init__(self, role_arn: str, message: str, code: str | None = None) -> None:
        super().__init__(f"Failed to assume role {role_arn}: {message}", code)
        self.role_arn = role_arn


class ElevationDenied(BrokerError):
    """Raised internally when a strategy cannot grant access.

    Never escapes ``elevate_permissions``; it becomes a manual-approval result.
    """

    default_code = "elevation_denied"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        alternatives: Sequence[str] = (),
    ) -> None:
        super().__init__(message, code)
        self.alternatives = tuple(alternatives)


class TemplateValidationError(BrokerError):
    default_code = "invalid_template"


class StackNotFoundError(BrokerError):
    default_code = "stack_not_found"

    def __init__(self, stack_name: str) -> None:
        super().__init__(f"Stack {stack_name} not found")
        self.stack_name = stack_name


class StackOperationTimeout(BrokerError):
    """Raised when a stack does not reach a terminal status within the poll budget."""

    default_code = "stack_timeout"

    def __init__(self, stack_name: str, attempts: int, last_status: str | None = None) -> None:
        super().__init__(
            f"Stack {stack_name} did not reach a terminal status after {attempts} attempts"
            + (f" (last status: {last_status})" if last_status else "")
        )
        self.stack_name = stack_name
        self.attempts = attempts
        self.last_status = last_status


class AuditWriteError(BrokerError):
    """Raised when the local audit log cannot be written."""

    default_code = "audit_write_failed"


class OperationCancelled(BrokerError):
    default_code = "cancelled"
