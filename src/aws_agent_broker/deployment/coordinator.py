"""CloudFormation deployment state machine.

``deploy_stack`` walks::

    START -> SWITCH_IDENTITY(agent) -> ELEVATE_PERMISSIONS -> [UPLOAD_TEMPLATE]
          -> EXISTENCE_CHECK -> CREATE | UPDATE -> POLL -> COMPLETE | FAILED

Every step appends a line to the result's ``audit_trail`` and the terminal
outcome is recorded as a single ``aws-operation`` audit event. Failures are
returned as ``DeploymentResult(success=False)``; only
``StackOperationTimeout`` escapes to the caller.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.credentials.client_factory import ClientConfig, ClientFactory
from aws_agent_broker.credentials.store import CredentialContextStore
from aws_agent_broker.deployment.classifier import classify_error, error_code, error_message
from aws_agent_broker.deployment.models import (
    DeploymentConfig,
    DeploymentMethod,
    DeploymentResult,
    RollbackConfig,
    ValidationReport,
)
from aws_agent_broker.deployment.poller import StackPoller, describe_stack, is_successful
from aws_agent_broker.deployment.templates import (
    MAX_TEMPLATE_BODY_BYTES,
    LoadedTemplate,
    is_local,
    load_template,
    upload_template,
)
from aws_agent_broker.domain.operations import OperationContext
from aws_agent_broker.errors import (
    BrokerError,
    StackNotFoundError,
    StackOperationTimeout,
    TemplateValidationError,
)
from aws_agent_broker.permissions.elevator import PermissionElevator
from aws_agent_broker.utils.cancellation import CancellationToken, check_cancelled

if TYPE_CHECKING:
    from aws_agent_broker.audit.ledger import AuditLedger

logger = logging.getLogger(__name__)

_IAM_CAPABILITIES = frozenset({"CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"})


def stack_arn_pattern(region: str, stack_name: str) -> str:
    return f"arn:aws:cloudformation:{region}:*:stack/{stack_name}/*"


def _s3_uri_to_url(uri: str) -> str:
    bucket, _, key = uri[len("s3://") :].partition("/")
    return f"https://{bucket}.s3.amazonaws.com/{key}"


class DeploymentCoordinator:
    def __init__(
        self,
        store: CredentialContextStore,
        factory: ClientFactory,
        elevator: PermissionElevator,
        ledger: "AuditLedger",
        *,
        poller: StackPoller | None = None,
        default_region: str = "us-east-1",
        stack_name_prefix: str = "agent-",
        template_key_prefix: str = "templates",
    ) -> None:
        self._store = store
        self._factory = factory
        self._elevator = elevator
        self._ledger = ledger
        self._poller = poller or StackPoller()
        self._default_region = default_region
        self._stack_name_prefix = stack_name_prefix
        self._template_key_prefix = template_key_prefix

    # ------------------------------------------------------------------
    # Deploy

    def deploy_stack(
        self,
        config: DeploymentConfig,
        rollback_config: RollbackConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        started = time.monotonic()
        region = config.region or self._default_region
        resources = [stack_arn_pattern(region, config.stack_name)]
        trail = [f"Deployment started: {config.stack_name}"]
        method: DeploymentMethod = "direct"
        action = "DeployStack"
        logger.info("Starting deployment of %s in %s", config.stack_name, region)

        try:
            check_cancelled(cancel_token, "deployment")
            self._store.switch_to("agent")
            trail.append("Switched to agent credentials")

            elevation = self._elevator.elevate_permissions(
                OperationContext(
                    operation="cloudformation-deploy",
                    service="cloudformation",
                    resources=tuple(resources),
                    tags=config.tags,
                ),
                cancel_token,
            )
            method = elevation.method
            trail.append(
                f"Permission elevation: {elevation.method} - "
                f"{'Success' if elevation.success else 'Failed'}"
            )
            if not elevation.success:
                return self._failure(
                    config.stack_name,
                    f"Permission elevation failed: {elevation.message}",
                    trail,
                    method,
                    started,
                    action=action,
                    resources=resources,
                    parameters=self._audit_parameters(config, region),
                )

            check_cancelled(cancel_token, "template preparation")
            source = self._template_source(config, region, trail)

            cfn = self._factory.get_client("cloudformation", ClientConfig(region=region))
            exists = self._stack_exists(cfn, config.stack_name)
            trail.append(f"Stack exists check: {exists}")
            action = "UpdateStack" if exists else "CreateStack"

            request = self._stack_request(config, source)
            if exists:
                stack_id = self._update_stack(cfn, request, trail)
                if stack_id is None:
                    result = DeploymentResult(
                        success=True,
                        method=method,
                        audit_trail=trail,
                        stack_status="UPDATE_COMPLETE",
                        duration_seconds=time.monotonic() - started,
                    )
                    self._record(action, resources, config, region, result)
                    return result
            else:
                stack_id = self._create_stack(cfn, request, rollback_config, trail)
            resources.append(stack_id)

            state = self._poller.wait_for_terminal(cfn, stack_id, cancel_token)
            trail.append(f"Stack deployment completed: {state.status}")
            success = is_successful(state.status)
            result = DeploymentResult(
                success=success,
                method=method,
                audit_trail=trail,
                stack_id=stack_id,
                stack_status=state.status,
                outputs=dict(state.outputs),
                error=None
                if success
                else f"Stack ended in {state.status}: {state.status_reason or 'no reason given'}",
                duration_seconds=time.monotonic() - started,
            )
            self._record(action, resources, config, region, result)
            return result

        except StackOperationTimeout as exc:
            trail.append(f"Deployment failed: {exc}")
            self._ledger.log_aws_operation(
                "cloudformation",
                action,
                resources,
                self._audit_parameters(config, region),
                False,
                str(exc),
                error_code=exc.code,
            )
            raise
        except Exception as exc:
            logger.warning("Deployment of %s failed: %s", config.stack_name, exc)
            return self._failure(
                config.stack_name,
                self._describe_error(exc),
                trail,
                method,
                started,
                action=action,
                resources=resources,
                parameters=self._audit_parameters(config, region),
                code=self._error_code(exc),
            )

    def _template_source(
        self, config: DeploymentConfig, region: str, trail: list[str]
    ) -> dict[str, str]:
        if not is_local(config.template_path):
            url = config.template_path
            if url.startswith("s3://"):
                url = _s3_uri_to_url(url)
            return {"TemplateURL": url}

        template = load_template(config.template_path)
        if config.s3_bucket:
            s3 = self._factory.get_client("s3", ClientConfig(region=region))
            url = upload_template(
                s3,
                template,
                bucket=config.s3_bucket,
                stack_name=config.stack_name,
                key_prefix=config.s3_key_prefix or self._template_key_prefix,
            )
            trail.append(f"Template uploaded to S3: {url}")
            return {"TemplateURL": url}
        if template.size_bytes > MAX_TEMPLATE_BODY_BYTES:
            raise TemplateValidationError(
                f"Template is {template.size_bytes} bytes, over the {MAX_TEMPLATE_BODY_BYTES}-byte "
                "inline limit; configure an S3 bucket for upload",
                "template_too_large",
            )
        return {"TemplateBody": template.body}

    @staticmethod
    def _stack_exists(cfn: Any, stack_name: str) -> bool:
        try:
            describe_stack(cfn, stack_name)
        except StackNotFoundError:
            return False
        return True

    @staticmethod
    def _stack_request(config: DeploymentConfig, source: dict[str, str]) -> dict[str, Any]:
        request: dict[str, Any] = {"StackName": config.stack_name, **source}
        if config.parameters:
            request["Parameters"] = [
                {"ParameterKey": key, "ParameterValue": value}
                for key, value in config.parameters.items()
            ]
        if config.tags:
            request["Tags"] = [{"Key": key, "Value": value} for key, value in config.tags.items()]
        if config.capabilities:
            request["Capabilities"] = list(config.capabilities)
        return request

    @staticmethod
    def _create_stack(
        cfn: Any,
        request: dict[str, Any],
        rollback_config: RollbackConfig | None,
        trail: list[str],
    ) -> str:
        if rollback_config is None:
            on_failure = "ROLLBACK"
        elif not rollback_config.enabled:
            on_failure = "DO_NOTHING"
        else:
            on_failure = rollback_config.on_failure
        response = cfn.create_stack(**request, OnFailure=on_failure)
        stack_id = response["StackId"]
        trail.append(f"Stack creation initiated: {stack_id}")
        return stack_id

    @staticmethod
    def _update_stack(cfn: Any, request: dict[str, Any], trail: list[str]) -> str | None:
        """Start an update; ``None`` means CloudFormation had nothing to change."""
        try:
            response = cfn.update_stack(**request)
        except ClientError as exc:
            if classify_error(exc) == "no-op-update":
                trail.append("No updates required")
                return None
            raise
        stack_id = response["StackId"]
        trail.append(f"Stack update initiated: {stack_id}")
        return stack_id

    # ------------------------------------------------------------------
    # Rollback

    def rollback_deployment(
        self,
        stack_name: str,
        region: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        """Recover a stack based on its current status.

        ``*FAILED*`` statuses are deleted; other ``*ROLLBACK*`` statuses are
        waited on; anything else would need an in-flight update cancelled,
        which is left to a human and reported as a failure.
        """
        started = time.monotonic()
        region = region or self._default_region
        resources = [stack_arn_pattern(region, stack_name)]
        parameters = {"StackName": stack_name, "Region": region}
        trail = [f"Rollback started: {stack_name}"]
        logger.info("Starting rollback of %s in %s", stack_name, region)

        try:
            check_cancelled(cancel_token, "rollback")
            self._store.switch_to("agent")
            trail.append("Switched to agent credentials for rollback")

            cfn = self._factory.get_client("cloudformation", ClientConfig(region=region))
            state = describe_stack(cfn, stack_name)
            resources.append(state.stack_id)
            trail.append(f"Current stack status: {state.status}")

            if "FAILED" in state.status:
                cfn.delete_stack(StackName=stack_name)
                trail.append(f"Stack deletion initiated: {stack_name}")
                result = DeploymentResult(
                    success=True,
                    method="direct",
                    audit_trail=trail,
                    stack_id=state.stack_id,
                    stack_status="DELETE_IN_PROGRESS",
                )
            elif "ROLLBACK" in state.status:
                trail.append("Stack already in rollback state, waiting for completion")
                final = self._poller.wait_for_terminal(cfn, state.stack_id, cancel_token)
                trail.append(f"Rollback completed: {final.status}")
                success = final.status.endswith("ROLLBACK_COMPLETE")
                result = DeploymentResult(
                    success=success,
                    method="direct",
                    audit_trail=trail,
                    stack_id=state.stack_id,
                    stack_status=final.status,
                    outputs=dict(final.outputs),
                    error=None if success else f"Rollback ended in {final.status}",
                )
            else:
                trail.append(f"Stack update cancellation not directly supported: {stack_name}")
                result = DeploymentResult(
                    success=False,
                    method="direct",
                    audit_trail=trail,
                    stack_id=state.stack_id,
                    stack_status=state.status,
                    error="Stack update cancellation requires manual intervention",
                )

            result.duration_seconds = time.monotonic() - started
            self._ledger.log_aws_operation(
                "cloudformation",
                "RollbackStack",
                resources,
                parameters,
                result.success,
                result.error,
                response_data={"stackStatus": result.stack_status},
            )
            return result

        except StackOperationTimeout as exc:
            trail.append(f"Rollback failed: {exc}")
            self._ledger.log_aws_operation(
                "cloudformation", "RollbackStack", resources, parameters, False, str(exc),
                error_code=exc.code,
            )
            raise
        except Exception as exc:
            logger.warning("Rollback of %s failed: %s", stack_name, exc)
            return self._failure(
                stack_name,
                f"Rollback failed: {self._describe_error(exc)}",
                trail,
                "direct",
                started,
                action="RollbackStack",
                resources=resources,
                parameters=parameters,
                code=self._error_code(exc),
            )

    # ------------------------------------------------------------------
    # Validation

    def validate_deployment(self, config: DeploymentConfig) -> ValidationReport:
        """Read-only checks run as the human; never raises."""
        report = ValidationReport()
        region = config.region or self._default_region
        try:
            with self._factory.context("human"):
                try:
                    self._run_validation(config, region, report)
                finally:
                    self._ledger.log_aws_operation(
                        "cloudformation",
                        "ValidateTemplate",
                        [stack_arn_pattern(region, config.stack_name)],
                        {"StackName": config.stack_name, "TemplatePath": config.template_path},
                        report.is_valid,
                        None if report.is_valid else "; ".join(report.errors),
                    )
        except Exception as exc:
            logger.warning("Validation of %s failed: %s", config.stack_name, exc)
            report.errors.append(f"Validation failed: {exc}")
        return report

    def _run_validation(self, config: DeploymentConfig, region: str, report: ValidationReport) -> None:
        template: LoadedTemplate | None = None
        if is_local(config.template_path):
            try:
                template = load_template(config.template_path)
            except TemplateValidationError as exc:
                report.errors.append(str(exc))

        if template is not None:
            self._check_template(config, template, report)

        cfn = self._factory.get_client("cloudformation", ClientConfig(region=region))
        if template is not None and template.size_bytes <= MAX_TEMPLATE_BODY_BYTES:
            self._validate_with_cloudformation(cfn, {"TemplateBody": template.body}, report)
        elif not is_local(config.template_path):
            url = config.template_path
            if url.startswith("s3://"):
                url = _s3_uri_to_url(url)
            self._validate_with_cloudformation(cfn, {"TemplateURL": url}, report)

        if config.s3_bucket:
            s3 = self._factory.get_client("s3", ClientConfig(region=region))
            try:
                s3.head_bucket(Bucket=config.s3_bucket)
            except (ClientError, BotoCoreError) as exc:
                report.warnings.append(f"S3 bucket validation failed: {exc}")

        if not config.stack_name.startswith(self._stack_name_prefix):
            report.recommendations.append(
                f'Consider using "{self._stack_name_prefix}" prefix for stack names'
            )

    @staticmethod
    def _check_template(
        config: DeploymentConfig, template: LoadedTemplate, report: ValidationReport
    ) -> None:
        if not template.looks_like_cloudformation():
            report.warnings.append("Template may not be a valid CloudFormation template")

        provided = dict(config.parameters or {})
        for name in template.required_parameters():
            if not provided.get(name):
                report.errors.append(f"Missing required parameter: {name}")
        unknown = sorted(set(provided) - set(template.parameters))
        if unknown:
            report.warnings.append(f"Parameters not declared in template: {', '.join(unknown)}")

        if template.has_iam_resources() and not _IAM_CAPABILITIES & set(config.capabilities):
            report.warnings.append(
                "Template creates IAM resources; CAPABILITY_IAM or CAPABILITY_NAMED_IAM is required"
            )

        if template.size_bytes > MAX_TEMPLATE_BODY_BYTES and not config.s3_bucket:
            report.errors.append(
                f"Template is {template.size_bytes} bytes, over the {MAX_TEMPLATE_BODY_BYTES}-byte "
                "inline limit; configure an S3 bucket for upload"
            )

    @staticmethod
    def _validate_with_cloudformation(
        cfn: Any, source: dict[str, str], report: ValidationReport
    ) -> None:
        try:
            cfn.validate_template(**source)
        except ClientError as exc:
            if error_code(exc) == "ValidationError":
                report.errors.append(f"Template validation failed: {error_message(exc)}")
            else:
                report.warnings.append(
                    f"Could not validate template with CloudFormation: {error_message(exc)}"
                )
        except BotoCoreError as exc:
            report.warnings.append(f"Could not validate template with CloudFormation: {exc}")

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _audit_parameters(config: DeploymentConfig, region: str) -> dict[str, Any]:
        return {
            "StackName": config.stack_name,
            "Region": region,
            "TemplatePath": config.template_path,
            "Parameters": dict(config.parameters or {}),
            "Capabilities": list(config.capabilities),
        }

    def _record(
        self,
        action: str,
        resources: list[str],
        config: DeploymentConfig,
        region: str,
        result: DeploymentResult,
    ) -> None:
        self._ledger.log_aws_operation(
            "cloudformation",
            action,
            resources,
            self._audit_parameters(config, region),
            result.success,
            result.error,
            response_data={
                "stackId": result.stack_id,
                "stackStatus": result.stack_status,
                "outputs": result.outputs,
            },
        )

    @staticmethod
    def _describe_error(exc: BaseException) -> str:
        if isinstance(exc, ClientError):
            return f"{error_code(exc)}: {error_message(exc)}"
        return str(exc)

    @staticmethod
    def _error_code(exc: BaseException) -> str | None:
        if isinstance(exc, ClientError):
            return error_code(exc)
        if isinstance(exc, BrokerError):
            return exc.code
        return None

    def _failure(
        self,
        stack_name: str,
        error: str,
        trail: list[str],
        method: DeploymentMethod,
        started: float,
        *,
        action: str,
        resources: list[str],
        parameters: dict[str, Any],
        code: str | None = None,
    ) -> DeploymentResult:
        label = "Rollback" if action == "RollbackStack" else "Deployment"
        trail.append(f"{label} failed: {error}")
        self._ledger.log_aws_operation(
            "cloudformation", action, resources, parameters, False, error, error_code=code
        )
        return DeploymentResult(
            success=False,
            method=method,
            audit_trail=trail,
            error=error,
            duration_seconds=time.monotonic() - started,
        )
