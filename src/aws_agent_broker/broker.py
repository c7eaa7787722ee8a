"""Broker assembly and the interface the CLI layer consumes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aws_agent_broker.audit.ledger import AuditLedger
from aws_agent_broker.audit.models import AuditEvent, AuditQuery, AuditSinkStatus, ComplianceReport
from aws_agent_broker.audit.sinks import CloudWatchLogsSink, LocalAuditFile
from aws_agent_broker.config import AgentConfigFile, Settings, load_agent_config, load_settings
from aws_agent_broker.credentials.client_factory import ClientFactory
from aws_agent_broker.credentials.context import ContextKind, CredentialContext
from aws_agent_broker.credentials.sources import CredentialSource, agent_source, human_source
from aws_agent_broker.credentials.store import CredentialContextStore
from aws_agent_broker.deployment.coordinator import DeploymentCoordinator
from aws_agent_broker.deployment.models import (
    DeploymentConfig,
    DeploymentResult,
    RollbackConfig,
    ValidationReport,
)
from aws_agent_broker.deployment.poller import StackPoller
from aws_agent_broker.domain.operations import OperationContext
from aws_agent_broker.logging_utils import configure_logging
from aws_agent_broker.permissions.elevator import PermissionElevator
from aws_agent_broker.permissions.models import ElevationResult
from aws_agent_broker.roles.catalog import RoleCatalog
from aws_agent_broker.roles.sessions import RoleSessionCache
from aws_agent_broker.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_DEFAULT_LOG_STREAM = "agent-broker"


@dataclass
class AgentBroker:
    """Application-wide dependency container.

    Components are wired in a fixed order: the client factory registers its
    cache listener on the store before the ledger does, so clients are
    dropped before the switch is audited.
    """

    settings: Settings
    store: CredentialContextStore
    factory: ClientFactory
    catalog: RoleCatalog
    ledger: AuditLedger
    elevator: PermissionElevator
    coordinator: DeploymentCoordinator

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        agent_config: AgentConfigFile | None = None,
        *,
        setup_logging: bool = True,
    ) -> "AgentBroker":
        """Entry point for a CLI process: logging, config files, then ``build``.

        Pass ``setup_logging=False`` when the host application already owns
        the root logger.
        """
        settings = settings or load_settings()
        if setup_logging:
            configure_logging(settings)
        agent_config = agent_config or load_agent_config(settings.agent.config_path)
        human = human_source(settings.aws.human_profile, settings.aws.default_region)
        agent = agent_source(agent_config.credentials, sts_region=settings.aws.sts_region)
        return cls.build(settings, human, agent, agent_config=agent_config)

    @classmethod
    def build(
        cls,
        settings: Settings,
        human: CredentialSource,
        agent: CredentialSource,
        *,
        agent_config: AgentConfigFile | None = None,
    ) -> "AgentBroker":
        store = CredentialContextStore(
            human,
            agent,
            sts_region=settings.aws.sts_region,
            session_duration_seconds=settings.roles.session_duration_seconds,
        )
        factory = ClientFactory(
            store,
            default_region=settings.aws.default_region,
            max_attempts=settings.clients.max_attempts,
            timeout_seconds=settings.clients.sdk_timeout_seconds,
            validate_cached=settings.clients.validate_cached,
        )
        catalog = RoleCatalog(
            factory,
            name_prefix=settings.roles.name_prefix,
            path_prefix=settings.roles.path_prefix,
            operation_tag_key=settings.roles.operation_tag_key,
            fetch_tags=settings.roles.fetch_tags,
            sessions=RoleSessionCache(
                refresh_buffer_seconds=settings.roles.session_refresh_buffer_seconds,
                max_entries=settings.roles.session_cache_max_entries,
            ),
        )

        log_group = settings.audit.log_group
        log_stream = settings.audit.log_stream
        if agent_config is not None:
            log_group = log_group or agent_config.audit.log_group_name
            log_stream = log_stream or agent_config.audit.log_stream_name
        remote = None
        if log_group:
            remote = CloudWatchLogsSink(
                lambda: factory.get_client("logs"),
                log_group,
                log_stream or _DEFAULT_LOG_STREAM,
            )

        ledger = AuditLedger(
            LocalAuditFile(settings.audit.log_path),
            context_provider=store.get_current_context,
            remote=remote,
            trail_client_provider=lambda: factory.get_client("cloudtrail"),
            buffer_size=settings.audit.buffer_size,
            default_limit=settings.audit.default_query_limit,
        )
        store.add_listener(ledger.on_context_change)

        elevator = PermissionElevator(
            store,
            catalog,
            factory,
            ledger,
            allow_direct=settings.elevation.allow_direct,
            request_ttl_seconds=settings.elevation.request_ttl_seconds,
            role_prefix=settings.roles.name_prefix,
            privilege_tag_key=settings.roles.privilege_tag_key,
        )
        poller = StackPoller(
            interval_seconds=settings.deployment.poll_interval_seconds,
            max_attempts=settings.deployment.max_poll_attempts,
            backoff_multiplier=settings.deployment.backoff_multiplier,
            max_interval_seconds=settings.deployment.max_poll_interval_seconds,
        )
        coordinator = DeploymentCoordinator(
            store,
            factory,
            elevator,
            ledger,
            poller=poller,
            default_region=settings.aws.default_region,
            stack_name_prefix=settings.deployment.stack_name_prefix,
            template_key_prefix=settings.deployment.template_key_prefix,
        )
        logger.info(
            "Broker assembled: human=%r agent=%r audit=%s remote=%s",
            human,
            agent,
            settings.audit.log_path,
            log_group or "disabled",
        )
        return cls(
            settings=settings,
            store=store,
            factory=factory,
            catalog=catalog,
            ledger=ledger,
            elevator=elevator,
            coordinator=coordinator,
        )

    def __enter__(self) -> "AgentBroker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def initialize(self) -> CredentialContext:
        return self.store.initialize()

    def switch_to(self, kind: ContextKind) -> CredentialContext:
        return self.store.switch_to(kind)

    def elevate_permissions(
        self, context: OperationContext, cancel_token: CancellationToken | None = None
    ) -> ElevationResult:
        return self.elevator.elevate_permissions(context, cancel_token)

    def deploy_stack(
        self,
        config: DeploymentConfig,
        rollback_config: RollbackConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        return self.coordinator.deploy_stack(config, rollback_config, cancel_token)

    def rollback_deployment(
        self,
        stack_name: str,
        region: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        return self.coordinator.rollback_deployment(stack_name, region, cancel_token)

    def validate_deployment(self, config: DeploymentConfig) -> ValidationReport:
        return self.coordinator.validate_deployment(config)

    def query_events(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        return self.ledger.query_events(query)

    def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        return self.ledger.generate_compliance_report(start, end)

    def verify_external_audit_sink(self) -> AuditSinkStatus:
        return self.ledger.verify_external_audit_sink()

    def status(self) -> dict[str, Any]:
        return {
            "credentials": self.store.get_credential_status(),
            "clients": self.factory.cache_stats(),
            "activeSessions": len(self.catalog.get_active_sessions()),
            "permissionRequests": self.elevator.get_request_statistics(),
            "pendingAuditEvents": self.ledger.pending,
        }

    def close(self) -> None:
        self.ledger.close()
