"""Cancellable polling of CloudFormation stack status."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from botocore.exceptions import ClientError

from aws_agent_broker.deployment.classifier import classify_error
from aws_agent_broker.errors import OperationCancelled, StackNotFoundError, StackOperationTimeout
from aws_agent_broker.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

TERMINAL_SUFFIXES = ("_COMPLETE", "_FAILED")


def is_terminal(status: str) -> bool:
    return status.endswith(TERMINAL_SUFFIXES)


def is_successful(status: str) -> bool:
    """A forward ``*_COMPLETE`` status; rollbacks and deletions do not count."""
    return status.endswith("_COMPLETE") and "ROLLBACK" not in status and not status.startswith("DELETE")


@dataclass(frozen=True)
class StackState:
    stack_id: str
    status: str
    status_reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)


def describe_stack(client: Any, stack_name: str) -> StackState:
    """Current state of ``stack_name`` (a name or a stack id).

    Raises:
        StackNotFoundError: If CloudFormation reports the stack does not exist.
    """
    try:
        response = client.describe_stacks(StackName=stack_name)
    except ClientError as exc:
        if classify_error(exc) == "not-found":
            raise StackNotFoundError(stack_name) from exc
        raise
    stacks = response.get("Stacks") or []
    if not stacks:
        raise StackNotFoundError(stack_name)
    stack = stacks[0]
    outputs = {
        item["OutputKey"]: item["OutputValue"]
        for item in stack.get("Outputs") or []
        if item.get("OutputKey") and item.get("OutputValue") is not None
    }
    return StackState(
        stack_id=stack.get("StackId", stack_name),
        status=stack["StackStatus"],
        status_reason=stack.get("StackStatusReason"),
        outputs=outputs,
    )


class StackPoller:
    """Describe a stack until it reaches a terminal status.

    The wait between attempts starts at ``interval_seconds`` and is
    multiplied by ``backoff_multiplier`` after each attempt, capped at
    ``max_interval_seconds``. A multiplier of 1.0 gives a fixed interval.
    """

    def __init__(
        self,
        *,
        interval_seconds: float = 30.0,
        max_attempts: int = 60,
        backoff_multiplier: float = 1.0,
        max_interval_seconds: float = 300.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.max_interval_seconds = max(max_interval_seconds, interval_seconds)

    def delays(self) -> Iterator[float]:
        delay = self.interval_seconds
        while True:
            yield delay
            delay = min(delay * self.backoff_multiplier, self.max_interval_seconds)

    def wait_for_terminal(
        self,
        client: Any,
        stack_name: str,
        cancel_token: CancellationToken | None = None,
        on_status: Callable[[StackState], None] | None = None,
    ) -> StackState:
        """Return the first terminal state.

        Raises:
            StackOperationTimeout: After ``max_attempts`` non-terminal reads.
            OperationCancelled: If ``cancel_token`` is cancelled between reads.
        """
        token = cancel_token or CancellationToken()
        delays = self.delays()
        last_status: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            token.raise_if_cancelled("stack polling")
            state = describe_stack(client, stack_name)
            last_status = state.status
            if on_status is not None:
                on_status(state)
            if is_terminal(state.status):
                logger.info(
                    "Stack %s reached %s after %d attempts", stack_name, state.status, attempt
                )
                return state
            if attempt == self.max_attempts:
                break
            delay = next(delays)
            logger.debug(
                "Stack %s is %s; next check in %.1fs (%d/%d)",
                stack_name,
                state.status,
                delay,
                attempt,
                self.max_attempts,
            )
            if token.wait(delay):
                raise OperationCancelled(
                    f"Stack polling cancelled for {stack_name}: {token.reason or 'no reason given'}"
                )
        raise StackOperationTimeout(stack_name, self.max_attempts, last_status)
