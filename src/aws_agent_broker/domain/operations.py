"""Domain objects for requested AWS operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class OperationContext:
    """What the caller is about to attempt, and on which resources.

    ``operation`` is a free-form name such as ``cloudformation-deploy`` or
    ``DeleteStack``; ``service`` is the AWS service prefix (``cloudformation``).
    """

    operation: str
    service: str
    resources: tuple[str, ...] = ()
    tags: Mapping[str, str] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.operation:
            raise ValueError("operation is required")
        if not self.service:
            raise ValueError("service is required")
        # Accept lists from callers; store an immutable tuple.
        object.__setattr__(self, "resources", tuple(self.resources))

    @property
    def key(self) -> str:
        return f"{self.service}:{self.operation}"
