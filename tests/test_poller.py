from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from aws_agent_broker.deployment.classifier import classify_error
from aws_agent_broker.deployment.poller import (
    StackPoller,
    describe_stack,
    is_successful,
    is_terminal,
)
from aws_agent_broker.errors import OperationCancelled, StackNotFoundError, StackOperationTimeout
from aws_agent_broker.utils.cancellation import CancellationToken

from conftest import client_error


def stacks(*statuses):
    return [
        {
            "Stacks": [
                {
                    "StackId": "arn:aws:cloudformation:us-east-1:123456789012:stack/demo/1",
                    "StackStatus": status,
                    "Outputs": [{"OutputKey": "Url", "OutputValue": "https://example"}],
                }
            ]
        }
        for status in statuses
    ]


@pytest.mark.parametrize(
    ("code", "message", "expected"),
    [
        ("ValidationError", "No updates are to be performed.", "no-op-update"),
        ("ValidationError", "Stack with id demo does not exist", "not-found"),
        ("ValidationError", "Stack:demo is in UPDATE_IN_PROGRESS state and can not be updated.", "in-progress"),
        ("ValidationError", "Template format error", "unknown"),
        ("AccessDenied", "", "access-denied"),
        ("AlreadyExistsException", "", "already-exists"),
        ("Throttling", "Rate exceeded", "throttled"),
    ],
)
def test_classify_error(code, message, expected):
    assert classify_error(client_error(code, message)) == expected


def test_classify_non_client_error():
    assert classify_error(RuntimeError("boom")) == "unknown"


class TestStatus:
    @pytest.mark.parametrize(
        "status", ["CREATE_COMPLETE", "UPDATE_ROLLBACK_COMPLETE", "CREATE_FAILED", "DELETE_COMPLETE"]
    )
    def test_terminal(self, status):
        assert is_terminal(status)

    @pytest.mark.parametrize("status", ["CREATE_IN_PROGRESS", "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"])
    def test_not_terminal(self, status):
        assert not is_terminal(status)

    def test_successful(self):
        assert is_successful("CREATE_COMPLETE")
        assert is_successful("UPDATE_COMPLETE")
        assert not is_successful("ROLLBACK_COMPLETE")
        assert not is_successful("UPDATE_ROLLBACK_COMPLETE")
        assert not is_successful("DELETE_COMPLETE")


class TestDescribe:
    def test_reads_outputs(self):
        client = MagicMock()
        client.describe_stacks.return_value = stacks("CREATE_COMPLETE")[0]

        state = describe_stack(client, "demo")

        assert state.status == "CREATE_COMPLETE"
        assert state.outputs == {"Url": "https://example"}

    def test_missing_stack(self):
        client = MagicMock()
        client.describe_stacks.side_effect = client_error(
            "ValidationError", "Stack with id demo does not exist", "DescribeStacks"
        )

        with pytest.raises(StackNotFoundError):
            describe_stack(client, "demo")

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.describe_stacks.side_effect = client_error("AccessDenied", "no", "DescribeStacks")

        with pytest.raises(ClientError) as exc_info:
            describe_stack(client, "demo")

        assert classify_error(exc_info.value) == "access-denied"


class TestPoller:
    def test_returns_first_terminal_state(self):
        client = MagicMock()
        client.describe_stacks.side_effect = stacks("CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_COMPLETE")
        seen = []

        state = StackPoller(interval_seconds=0).wait_for_terminal(client, "demo", on_status=seen.append)

        assert state.status == "CREATE_COMPLETE"
        assert [s.status for s in seen] == ["CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_COMPLETE"]

    def test_timeout_after_budget(self):
        client = MagicMock()
        client.describe_stacks.side_effect = stacks(*["UPDATE_IN_PROGRESS"] * 4)
        poller = StackPoller(interval_seconds=0, max_attempts=4)

        with pytest.raises(StackOperationTimeout) as exc_info:
            poller.wait_for_terminal(client, "demo")

        assert exc_info.value.attempts == 4
        assert exc_info.value.last_status == "UPDATE_IN_PROGRESS"
        assert client.describe_stacks.call_count == 4

    def test_default_budget_is_sixty_attempts_thirty_seconds_apart(self):
        client = MagicMock()
        client.describe_stacks.side_effect = stacks(*["CREATE_IN_PROGRESS"] * 60)
        waits = []

        with patch.object(CancellationToken, "wait", side_effect=lambda t: waits.append(t) or False):
            with pytest.raises(StackOperationTimeout):
                StackPoller().wait_for_terminal(client, "demo")

        assert client.describe_stacks.call_count == 60
        assert waits == [30.0] * 59

    def test_backoff_is_capped(self):
        poller = StackPoller(interval_seconds=10, backoff_multiplier=2.0, max_interval_seconds=35)
        delays = poller.delays()

        assert [next(delays) for _ in range(4)] == [10, 20, 35, 35]

    def test_cancel_before_first_read(self):
        client = MagicMock()
        token = CancellationToken()
        token.cancel("shutdown")

        with pytest.raises(OperationCancelled, match="shutdown"):
            StackPoller().wait_for_terminal(client, "demo", token)

        client.describe_stacks.assert_not_called()

    def test_cancel_while_waiting(self):
        client = MagicMock()
        client.describe_stacks.side_effect = stacks("CREATE_IN_PROGRESS", "CREATE_COMPLETE")
        token = CancellationToken()

        with patch.object(token, "wait", return_value=True):
            with pytest.raises(OperationCancelled):
                StackPoller().wait_for_terminal(client, "demo", token)

        assert client.describe_stacks.call_count == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            StackPoller(max_attempts=0)
