from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from aws_agent_broker.audit.models import AuditQuery
from aws_agent_broker.broker import AgentBroker
from aws_agent_broker.credentials.sources import StaticKeySource
from aws_agent_broker.deployment.models import DeploymentConfig, RollbackConfig
from aws_agent_broker.errors import StackOperationTimeout
from aws_agent_broker.utils.cancellation import CancellationToken

from conftest import AGENT_CREDENTIALS, HUMAN_CREDENTIALS, client_error

STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/demo/abc"
TEMPLATE = {
    "AWSTemplateFormatVersion": "2010-09-09",
    "Parameters": {"Env": {"Type": "String"}},
    "Resources": {"Bucket": {"Type": "AWS::S3::Bucket"}},
}
NOT_FOUND = client_error("ValidationError", "Stack with id demo does not exist", "DescribeStacks")
NO_UPDATES = client_error("ValidationError", "No updates are to be performed.", "UpdateStack")


def described(status, reason=None):
    stack = {"StackId": STACK_ID, "StackStatus": status, "Outputs": []}
    if reason:
        stack["StackStatusReason"] = reason
    return {"Stacks": [stack]}


@pytest.fixture
def cfn(fake_aws):
    client = MagicMock()
    client.create_stack.return_value = {"StackId": STACK_ID}
    client.update_stack.return_value = {"StackId": STACK_ID}
    fake_aws.services["cloudformation"] = client
    return client


@pytest.fixture
def s3(fake_aws):
    client = MagicMock()
    fake_aws.services["s3"] = client
    return client


@pytest.fixture
def iam(fake_aws):
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "Roles": [
                {
                    "RoleName": "agent-deploy-app",
                    "Arn": "arn:aws:iam::123456789012:role/agent-deploy-app",
                    "Path": "/",
                    "Tags": [],
                }
            ]
        }
    ]
    fake_aws.services["iam"] = client
    return client


@pytest.fixture
def broker(settings, fake_aws, cfn, s3, iam):
    broker = AgentBroker.build(
        settings,
        StaticKeySource(HUMAN_CREDENTIALS, "us-east-1"),
        StaticKeySource(AGENT_CREDENTIALS, "us-east-1"),
    )
    broker.initialize()
    yield broker
    broker.close()


@pytest.fixture
def template_path(tmp_path):
    path = tmp_path / "t.json"
    path.write_text(json.dumps(TEMPLATE))
    return str(path)


def operations(broker, action):
    events = broker.query_events(AuditQuery(event_types=("aws-operation",)))
    return [e for e in events if e.operation.action == action]


class TestDeployCreate:
    def test_fresh_stack_is_created(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [
            NOT_FOUND,
            described("CREATE_IN_PROGRESS"),
            described("CREATE_COMPLETE"),
        ]

        result = broker.deploy_stack(
            DeploymentConfig("demo", template_path, parameters={"Env": "dev"}, tags={"team": "x"})
        )

        assert result.success is True
        assert result.stack_status == "CREATE_COMPLETE"
        assert result.stack_id == STACK_ID
        assert result.method == "role-assumption"
        trail = result.audit_trail
        assert trail[0] == "Deployment started: demo"
        assert "Switched to agent credentials" in trail
        assert "Permission elevation: role-assumption - Success" in trail
        assert "Stack exists check: False" in trail
        assert f"Stack creation initiated: {STACK_ID}" in trail
        assert trail[-1] == "Stack deployment completed: CREATE_COMPLETE"

        kwargs = cfn.create_stack.call_args.kwargs
        assert kwargs["StackName"] == "demo"
        assert kwargs["OnFailure"] == "ROLLBACK"
        assert kwargs["Parameters"] == [{"ParameterKey": "Env", "ParameterValue": "dev"}]
        assert kwargs["Tags"] == [{"Key": "team", "Value": "x"}]
        assert json.loads(kwargs["TemplateBody"]) == TEMPLATE
        cfn.update_stack.assert_not_called()

    def test_create_recorded_as_one_operation(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [NOT_FOUND, described("CREATE_COMPLETE")]

        broker.deploy_stack(DeploymentConfig("demo", template_path))

        events = operations(broker, "CreateStack")
        assert len(events) == 1
        assert events[0].result.success is True
        assert STACK_ID in events[0].operation.resources
        assert "arn:aws:cloudformation:us-east-1:*:stack/demo/*" in events[0].operation.resources
        assert events[0].actor.kind == "agent"

    def test_failed_create_reports_status(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [NOT_FOUND, described("ROLLBACK_COMPLETE", "Bucket exists")]

        result = broker.deploy_stack(DeploymentConfig("demo", template_path))

        assert result.success is False
        assert result.stack_status == "ROLLBACK_COMPLETE"
        assert "Bucket exists" in result.error

    def test_rollback_disabled_maps_to_do_nothing(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [NOT_FOUND, described("CREATE_COMPLETE")]

        broker.deploy_stack(DeploymentConfig("demo", template_path), RollbackConfig(enabled=False))

        assert cfn.create_stack.call_args.kwargs["OnFailure"] == "DO_NOTHING"


class TestDeployUpdate:
    def test_existing_stack_is_updated(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [described("CREATE_COMPLETE"), described("UPDATE_COMPLETE")]

        result = broker.deploy_stack(DeploymentConfig("demo", template_path, capabilities=("CAPABILITY_IAM",)))

        assert result.success is True
        assert result.stack_status == "UPDATE_COMPLETE"
        assert f"Stack update initiated: {STACK_ID}" in result.audit_trail
        kwargs = cfn.update_stack.call_args.kwargs
        assert kwargs["Capabilities"] == ["CAPABILITY_IAM"]
        assert "OnFailure" not in kwargs
        assert len(operations(broker, "UpdateStack")) == 1

    def test_no_changes_is_success(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [described("UPDATE_COMPLETE")]
        cfn.update_stack.side_effect = NO_UPDATES

        result = broker.deploy_stack(DeploymentConfig("demo", template_path))

        assert result.success is True
        assert result.stack_status == "UPDATE_COMPLETE"
        assert "No updates required" in result.audit_trail
        assert cfn.describe_stacks.call_count == 1

    def test_other_update_errors_fail(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [described("UPDATE_COMPLETE")]
        cfn.update_stack.side_effect = client_error("ValidationError", "Template format error", "UpdateStack")

        result = broker.deploy_stack(DeploymentConfig("demo", template_path))

        assert result.success is False
        assert "Template format error" in result.error
        assert result.audit_trail[-1].startswith("Deployment failed:")
        failed = operations(broker, "UpdateStack")
        assert failed[0].result.success is False


class TestDeployFailures:
    def test_elevation_failure_aborts_without_mutation(self, broker, cfn, iam, template_path):
        iam.get_paginator.return_value.paginate.return_value = [{"Roles": []}]

        result = broker.deploy_stack(DeploymentConfig("demo", template_path))

        assert result.success is False
        assert result.method == "manual-approval"
        assert result.error.startswith("Permission elevation failed")
        assert "Permission elevation: manual-approval - Failed" in result.audit_trail
        cfn.create_stack.assert_not_called()
        cfn.update_stack.assert_not_called()
        cfn.describe_stacks.assert_not_called()

    def test_timeout_propagates(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = [NOT_FOUND] + [described("CREATE_IN_PROGRESS")] * 5

        with pytest.raises(StackOperationTimeout):
            broker.deploy_stack(DeploymentConfig("demo", template_path))

        events = operations(broker, "CreateStack")
        assert len(events) == 1
        assert events[0].result.error_code == "stack_timeout"

    def test_describe_errors_other_than_not_found_fail(self, broker, cfn, template_path):
        cfn.describe_stacks.side_effect = client_error("AccessDenied", "nope", "DescribeStacks")

        result = broker.deploy_stack(DeploymentConfig("demo", template_path))

        assert result.success is False
        assert result.error.startswith("AccessDenied")
        cfn.create_stack.assert_not_called()
        assert operations(broker, "DeployStack")[0].result.error_code == "AccessDenied"

    def test_missing_template_fails(self, broker, cfn, tmp_path):
        result = broker.deploy_stack(DeploymentConfig("demo", str(tmp_path / "missing.json")))

        assert result.success is False
        assert "Template file not found" in result.error
        cfn.create_stack.assert_not_called()

    def test_oversized_template_needs_bucket(self, broker, cfn, tmp_path):
        path = tmp_path / "big.json"
        path.write_text(json.dumps({**TEMPLATE, "Description": "x" * 60_000}))

        result = broker.deploy_stack(DeploymentConfig("demo", str(path)))

        assert result.success is False
        assert "inline limit" in result.error

    def test_cancelled_deploy_returns_failure(self, broker, cfn, template_path):
        token = CancellationToken()
        token.cancel("operator abort")

        result = broker.deploy_stack(DeploymentConfig("demo", template_path), cancel_token=token)

        assert result.success is False
        assert "operator abort" in result.error
        cfn.create_stack.assert_not_called()


class TestTemplateSource:
    def test_local_template_uploaded_when_bucket_set(self, broker, cfn, s3, template_path):
        cfn.describe_stacks.side_effect = [NOT_FOUND, described("CREATE_COMPLETE")]

        result = broker.deploy_stack(DeploymentConfig("demo", template_path, s3_bucket="agent-artifacts"))

        key = s3.put_object.call_args.kwargs["Key"]
        url = f"https://agent-artifacts.s3.amazonaws.com/{key}"
        assert f"Template uploaded to S3: {url}" in result.audit_trail
        kwargs = cfn.create_stack.call_args.kwargs
        assert kwargs["TemplateURL"] == url
        assert "TemplateBody" not in kwargs

    def test_s3_uri_converted(self, broker, cfn, s3):
        cfn.describe_stacks.side_effect = [NOT_FOUND, described("CREATE_COMPLETE")]

        broker.deploy_stack(DeploymentConfig("demo", "s3://agent-artifacts/templates/app.yaml"))

        assert cfn.create_stack.call_args.kwargs["TemplateURL"] == (
            "https://agent-artifacts.s3.amazonaws.com/templates/app.yaml"
        )
        s3.put_object.assert_not_called()


class TestRollback:
    def test_failed_stack_deleted(self, broker, cfn):
        cfn.describe_stacks.side_effect = [described("UPDATE_ROLLBACK_FAILED")]

        result = broker.rollback_deployment("demo")

        assert result.success is True
        cfn.delete_stack.assert_called_once_with(StackName="demo")
        assert "Stack deletion initiated: demo" in result.audit_trail
        assert "Current stack status: UPDATE_ROLLBACK_FAILED" in result.audit_trail
        events = operations(broker, "RollbackStack")
        assert len(events) == 1
        assert events[0].result.success is True

    def test_rolling_back_stack_waited_on(self, broker, cfn):
        cfn.describe_stacks.side_effect = [
            described("UPDATE_ROLLBACK_IN_PROGRESS"),
            described("UPDATE_ROLLBACK_IN_PROGRESS"),
            described("UPDATE_ROLLBACK_COMPLETE"),
        ]

        result = broker.rollback_deployment("demo")

        assert result.success is True
        assert result.stack_status == "UPDATE_ROLLBACK_COMPLETE"
        assert "Stack already in rollback state, waiting for completion" in result.audit_trail
        cfn.delete_stack.assert_not_called()

    def test_in_flight_update_needs_manual_intervention(self, broker, cfn):
        cfn.describe_stacks.side_effect = [described("UPDATE_IN_PROGRESS")]

        result = broker.rollback_deployment("demo")

        assert result.success is False
        assert result.error == "Stack update cancellation requires manual intervention"
        assert "Stack update cancellation not directly supported: demo" in result.audit_trail
        cfn.cancel_update_stack.assert_not_called()
        assert operations(broker, "RollbackStack")[0].result.success is False

    def test_missing_stack_fails(self, broker, cfn):
        cfn.describe_stacks.side_effect = [NOT_FOUND]

        result = broker.rollback_deployment("demo")

        assert result.success is False
        assert result.error.startswith("Rollback failed:")

    def test_rollback_runs_as_agent(self, broker, cfn):
        cfn.describe_stacks.side_effect = [described("CREATE_FAILED")]

        broker.rollback_deployment("demo")

        assert broker.store.get_current_context().kind == "agent"


class TestValidate:
    def test_runs_as_human_and_restores(self, broker, cfn, template_path):
        seen = []
        cfn.validate_template.side_effect = lambda **_: seen.append(broker.store.get_current_context().kind) or {}
        broker.switch_to("agent")

        report = broker.validate_deployment(DeploymentConfig("agent-demo", template_path, parameters={"Env": "dev"}))

        assert report.is_valid
        assert seen == ["human"]
        assert broker.store.get_current_context().kind == "agent"
        cfn.create_stack.assert_not_called()

    def test_collects_findings(self, broker, cfn, s3, tmp_path):
        path = tmp_path / "t.json"
        path.write_text(
            json.dumps(
                {
                    "Parameters": {"Env": {"Type": "String"}},
                    "Resources": {"Role": {"Type": "AWS::IAM::Role"}},
                }
            )
        )
        s3.head_bucket.side_effect = client_error("404", "Not Found", "HeadBucket")

        report = broker.validate_deployment(
            DeploymentConfig("demo", str(path), parameters={"Extra": "1"}, s3_bucket="missing-bucket")
        )

        assert "Missing required parameter: Env" in report.errors
        assert not report.is_valid
        assert any("Extra" in w for w in report.warnings)
        assert any("CAPABILITY_IAM" in w for w in report.warnings)
        assert any("S3 bucket validation failed" in w for w in report.warnings)
        assert report.recommendations == ['Consider using "agent-" prefix for stack names']

    def test_cloudformation_rejection_is_error(self, broker, cfn, template_path):
        cfn.validate_template.side_effect = client_error("ValidationError", "Template format error", "ValidateTemplate")

        report = broker.validate_deployment(DeploymentConfig("agent-demo", template_path, parameters={"Env": "dev"}))

        assert report.errors == ["Template validation failed: Template format error"]

    def test_missing_template_is_error_not_exception(self, broker, tmp_path):
        report = broker.validate_deployment(DeploymentConfig("agent-demo", str(tmp_path / "nope.yaml")))

        assert not report.is_valid
        assert any("Template file not found" in e for e in report.errors)

    def test_logged_as_validate_template(self, broker, template_path):
        broker.validate_deployment(DeploymentConfig("agent-demo", template_path, parameters={"Env": "dev"}))

        events = operations(broker, "ValidateTemplate")
        assert len(events) == 1
        assert events[0].actor.kind == "human"


def test_end_to_end_deploy_then_rollback(broker, cfn, template_path):
    cfn.describe_stacks.side_effect = [
        NOT_FOUND,
        described("CREATE_IN_PROGRESS"),
        described("CREATE_COMPLETE"),
        described("UPDATE_ROLLBACK_FAILED"),
    ]

    assert broker.switch_to("agent").kind == "agent"
    deployed = broker.deploy_stack(DeploymentConfig("demo", template_path, parameters={"Env": "dev"}))
    rolled_back = broker.rollback_deployment("demo")

    assert deployed.stack_status == "CREATE_COMPLETE"
    assert rolled_back.success is True
    cfn.delete_stack.assert_called_once_with(StackName="demo")
    switches = broker.query_events(AuditQuery(event_types=("credential-switch",)))
    assert all(event.result.success for event in switches)
    assert broker.status()["permissionRequests"]["total"] == 0
