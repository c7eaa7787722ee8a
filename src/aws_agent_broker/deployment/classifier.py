"""Maps CloudFormation errors to the outcomes the coordinator acts on."""

from __future__ import annotations

from typing import Literal

from botocore.exceptions import ClientError

ProviderOutcome = Literal[
    "not-found",
    "no-op-update",
    "access-denied",
    "already-exists",
    "throttled",
    "in-progress",
    "unknown",
]

# Codes that are unambiguous on their own.
_CODE_OUTCOMES: dict[str, ProviderOutcome] = {
    "AccessDenied": "access-denied",
    "AccessDeniedException": "access-denied",
    "UnauthorizedOperation": "access-denied",
    "AlreadyExistsException": "already-exists",
    "Throttling": "throttled",
    "ThrottlingException": "throttled",
    "RequestLimitExceeded": "throttled",
    "TooManyRequestsException": "throttled",
    "OperationInProgressException": "in-progress",
    "StackNotFoundException": "not-found",
}

# CloudFormation reports several outcomes under the generic ValidationError
# code; the message is the only discriminator it offers.
_VALIDATION_MESSAGE_OUTCOMES: tuple[tuple[str, ProviderOutcome], ...] = (
    ("no updates are to be performed", "no-op-update"),
    ("does not exist", "not-found"),
    ("is in update_in_progress state", "in-progress"),
    ("is in create_in_progress state", "in-progress"),
    ("_in_progress state and can not be updated", "in-progress"),
)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", str(exc))


def classify_error(exc: BaseException) -> ProviderOutcome:
    if not isinstance(exc, ClientError):
        return "unknown"
    code = error_code(exc)
    if code in _CODE_OUTCOMES:
        return _CODE_OUTCOMES[code]
    if code == "ValidationError":
        message = error_message(exc).lower()
        for fragment, outcome in _VALIDATION_MESSAGE_OUTCOMES:
            if fragment in message:
                return outcome
    return "unknown"
