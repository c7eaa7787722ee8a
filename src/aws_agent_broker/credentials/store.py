"""The single holder of the broker's current identity.

``CredentialContextStore`` owns one credential source per context kind and
exactly one current ``CredentialContext``. Every change (switch, role
assumption, restore) re-verifies identity with STS GetCallerIdentity before
the new context becomes current. A failed change leaves the previous context
in place; the one exception is a non-strict ``restore``, which puts a
snapshot back even when it no longer verifies.

Listeners registered with ``add_listener`` are called synchronously, inside
the store lock, after every change attempt. The client factory relies on
this to drop cached clients before anyone can request a new one.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.credentials.context import (
    CONTEXT_KINDS,
    AWSCredentials,
    ContextChange,
    ContextKind,
    ContextSnapshot,
    CredentialContext,
    CredentialStatus,
    Identity,
)
from aws_agent_broker.credentials.sources import (
    CredentialSource,
    assume_role_credentials,
    default_session_name,
    sts_client,
)
from aws_agent_broker.errors import (
    ContextSwitchError,
    CredentialLoadError,
    CredentialSourceError,
    NoActiveContextError,
    RoleAssumptionError,
)

if TYPE_CHECKING:
    from aws_agent_broker.roles.sessions import RoleSession

logger = logging.getLogger(__name__)

ContextListener = Callable[[ContextChange], Any]


class IdentityVerificationError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class CredentialContextStore:
    def __init__(
        self,
        human: CredentialSource,
        agent: CredentialSource,
        *,
        sts_region: str = "us-east-1",
        session_duration_seconds: int = 3600,
    ) -> None:
        self._sources: dict[ContextKind, CredentialSource] = {"human": human, "agent": agent}
        self._sts_region = sts_region
        self._session_duration_seconds = session_duration_seconds
        self._current: CredentialContext | None = None
        self._credentials: AWSCredentials | None = None
        self._initialized = False
        self._lock = threading.RLock()
        self._listeners: list[ContextListener] = []

    # ------------------------------------------------------------------
    # Listeners

    def add_listener(self, listener: ContextListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ContextListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, change: ContextChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    # ------------------------------------------------------------------
    # Verification

    def _verify(self, credentials: AWSCredentials) -> Identity:
        try:
            response = sts_client(credentials, self._sts_region).get_caller_identity()
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise IdentityVerificationError(
                error.get("Message", str(exc)), error.get("Code", "Unknown")
            ) from exc
        except BotoCoreError as exc:
            raise IdentityVerificationError(str(exc), "sts_unavailable") from exc
        return Identity.from_caller_identity(response)

    def _resolve_and_verify(self, kind: ContextKind) -> tuple[AWSCredentials, Identity]:
        credentials = self._sources[kind].resolve()
        return credentials, self._verify(credentials)

    def _set_current(self, context: CredentialContext, credentials: AWSCredentials) -> None:
        self._current = context
        self._credentials = credentials

    # ------------------------------------------------------------------
    # Lifecycle

    def initialize(self) -> CredentialContext:
        """Resolve and verify both sources, then make ``human`` current.

        Raises:
            CredentialLoadError: If either source cannot be resolved or verified.
        """
        with self._lock:
            verified: dict[ContextKind, tuple[AWSCredentials, Identity]] = {}
            for kind in CONTEXT_KINDS:
                try:
                    verified[kind] = self._resolve_and_verify(kind)
                except CredentialSourceError as exc:
                    raise CredentialLoadError(kind, str(exc), exc.code) from exc
                except IdentityVerificationError as exc:
                    raise CredentialLoadError(kind, str(exc), exc.code) from exc
                logger.info(
                    "Loaded %s credentials from %s as %s",
                    kind,
                    self._sources[kind].describe(),
                    verified[kind][1].arn,
                )

            previous = self._current
            credentials, identity = verified["human"]
            context = self._context_for("human", credentials, identity)
            self._set_current(context, credentials)
            self._initialized = True
            self._notify(
                ContextChange(
                    action="switch",
                    target_kind="human",
                    previous=previous,
                    current=context,
                    success=True,
                )
            )
            return context

    @staticmethod
    def _context_for(
        kind: ContextKind, credentials: AWSCredentials, identity: Identity
    ) -> CredentialContext:
        return CredentialContext(
            kind=kind,
            identity=identity,
            session_token=credentials.session_token,
            expires_at=credentials.expiration,
        )

    def switch_to(self, kind: ContextKind) -> CredentialContext:
        """Verify ``kind``'s source and make it the current context.

        On failure the previous context stays current and
        ``ContextSwitchError`` is raised.
        """
        if kind not in self._sources:
            raise ContextSwitchError(str(kind), "unknown context kind", "unknown_kind")
        with self._lock:
            previous = self._current
            try:
                credentials, identity = self._resolve_and_verify(kind)
            except (CredentialSourceError, IdentityVerificationError) as exc:
                logger.warning("Switch to %s context failed: %s", kind, exc)
                self._notify(
                    ContextChange(
                        action="switch",
                        target_kind=kind,
                        previous=previous,
                        current=previous,
                        success=False,
                        error=str(exc),
                    )
                )
                raise ContextSwitchError(kind, str(exc), exc.code) from exc

            context = self._context_for(kind, credentials, identity)
            self._set_current(context, credentials)
            logger.info("Switched to %s context as %s", kind, identity.arn)
            self._notify(
                ContextChange(
                    action="switch",
                    target_kind=kind,
                    previous=previous,
                    current=context,
                    success=True,
                )
            )
            return context

    def assume_role(
        self,
        role_arn: str,
        session_name: str | None = None,
        duration_seconds: int | None = None,
    ) -> CredentialContext:
        """Assume ``role_arn`` from the current identity; the kind is unchanged.

        Raises:
            NoActiveContextError: If no context is current.
            RoleAssumptionError: If STS refuses or the new identity cannot be verified.
        """
        with self._lock:
            previous = self.get_current_context()
            base_credentials = self.get_current_credentials()
            name = session_name or default_session_name(previous.kind)
            try:
                credentials = assume_role_credentials(
                    base_credentials,
                    role_arn,
                    name,
                    region=self._sts_region,
                    duration_seconds=duration_seconds or self._session_duration_seconds,
                )
                try:
                    identity = self._verify(credentials)
                except IdentityVerificationError as exc:
                    raise RoleAssumptionError(
                        role_arn, f"identity verification failed: {exc}", "verification_failed"
                    ) from exc
            except RoleAssumptionError as exc:
                self._notify(
                    ContextChange(
                        action="assume-role",
                        target_kind=previous.kind,
                        previous=previous,
                        current=previous,
                        success=False,
                        error=str(exc),
                        role_arn=role_arn,
                    )
                )
                raise

            return self._enter_role(previous, role_arn, name, credentials, identity)

    def adopt_session(self, session: "RoleSession") -> CredentialContext:
        """Re-enter a cached role session after re-verifying its credentials.

        Only the context kind that assumed the role may re-enter it; from its
        base identity the caller must also be the one recorded on the session.
        """
        with self._lock:
            previous = self.get_current_context()
            try:
                if session.origin_kind != previous.kind:
                    raise IdentityVerificationError(
                        f"session belongs to the {session.origin_kind} context, "
                        f"not {previous.kind}",
                        "origin_mismatch",
                    )
                if (
                    previous.role_arn is None
                    and session.origin_arn is not None
                    and previous.identity is not None
                    and previous.identity.arn != session.origin_arn
                ):
                    raise IdentityVerificationError(
                        f"session was assumed by {session.origin_arn}, "
                        f"current identity is {previous.identity.arn}",
                        "origin_mismatch",
                    )
                identity = self._verify(session.credentials)
            except IdentityVerificationError as exc:
                self._notify(
                    ContextChange(
                        action="assume-role",
                        target_kind=previous.kind,
                        previous=previous,
                        current=previous,
                        success=False,
                        error=str(exc),
                        role_arn=session.role_arn,
                    )
                )
                raise RoleAssumptionError(
                    session.role_arn, f"cached session rejected: {exc}", exc.code
                ) from exc
            return self._enter_role(
                previous, session.role_arn, session.session_name, session.credentials, identity
            )

    def _enter_role(
        self,
        previous: CredentialContext,
        role_arn: str,
        session_name: str,
        credentials: AWSCredentials,
        identity: Identity,
    ) -> CredentialContext:
        context = dataclasses.replace(
            previous,
            identity=identity,
            session_token=credentials.session_token,
            expires_at=credentials.expiration,
            role_arn=role_arn,
            session_name=session_name,
        )
        self._set_current(context, credentials)
        logger.info("Assumed role %s in %s context", role_arn, context.kind)
        self._notify(
            ContextChange(
                action="assume-role",
                target_kind=context.kind,
                previous=previous,
                current=context,
                success=True,
                role_arn=role_arn,
            )
        )
        return context

    # ------------------------------------------------------------------
    # Snapshots

    def snapshot(self) -> ContextSnapshot:
        with self._lock:
            return ContextSnapshot(
                context=self.get_current_context(),
                credentials=self.get_current_credentials(),
            )

    def restore(self, snapshot: ContextSnapshot, *, strict: bool = True) -> CredentialContext:
        """Make ``snapshot`` current again, provided its identity still verifies.

        With ``strict=False`` a snapshot that fails verification is reinstated
        as-is after the failure is reported to listeners; the caller held it
        before, so nothing new is trusted. ``ClientFactory.context`` uses this
        to guarantee the pre-call context comes back on every exit path.
        """
        target = snapshot.context
        with self._lock:
            previous = self._current
            try:
                identity = self._verify(snapshot.credentials)
                if target.identity is not None and identity.arn != target.identity.arn:
                    raise IdentityVerificationError(
                        f"identity changed from {target.identity.arn} to {identity.arn}",
                        "identity_mismatch",
                    )
            except IdentityVerificationError as exc:
                self._notify(
                    ContextChange(
                        action="restore",
                        target_kind=target.kind,
                        previous=previous,
                        current=previous,
                        success=False,
                        error=str(exc),
                    )
                )
                if strict:
                    raise ContextSwitchError(target.kind, str(exc), exc.code) from exc
                logger.warning(
                    "Reinstating %s context without verification: %s", target.kind, exc
                )

            self._set_current(target, snapshot.credentials)
            self._notify(
                ContextChange(
                    action="restore",
                    target_kind=target.kind,
                    previous=previous,
                    current=target,
                    success=True,
                    role_arn=target.role_arn,
                )
            )
            return target

    # ------------------------------------------------------------------
    # Reads

    def get_current_context(self) -> CredentialContext:
        current = self._current
        if current is None:
            raise NoActiveContextError("No credential context is active; call initialize()")
        return current

    def get_current_credentials(self) -> AWSCredentials:
        credentials = self._credentials
        if credentials is None:
            raise NoActiveContextError("No credential context is active; call initialize()")
        return credentials

    def validate_current_credentials(self) -> bool:
        """Re-verify the current credentials without changing any state."""
        credentials = self._credentials
        if credentials is None:
            return False
        try:
            self._verify(credentials)
        except IdentityVerificationError as exc:
            logger.warning("Current credentials failed verification: %s", exc)
            return False
        return True

    def get_credential_status(self) -> CredentialStatus:
        current = self._current
        return CredentialStatus(
            initialized=self._initialized,
            current_kind=current.kind if current else None,
            identity=current.identity if current else None,
            valid=self.validate_current_credentials(),
            sources={kind: source.describe() for kind, source in self._sources.items()},
            expires_at=current.expires_at if current else None,
        )
