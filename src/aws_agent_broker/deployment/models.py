"""Deployment requests and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping

OnFailure = Literal["ROLLBACK", "DELETE", "DO_NOTHING"]
DeploymentMethod = Literal["direct", "role-assumption", "manual-approval"]


@dataclass(frozen=True)
class DeploymentConfig:
    stack_name: str
    template_path: str
    parameters: Mapping[str, str] | None = None
    tags: Mapping[str, str] | None = None
    capabilities: tuple[str, ...] = ()
    region: str | None = None
    s3_bucket: str | None = None
    s3_key_prefix: str | None = None

    def __post_init__(self) -> None:
        if not self.stack_name:
            raise ValueError("stack_name is required")
        if not self.template_path:
            raise ValueError("template_path is required")
        object.__setattr__(self, "capabilities", tuple(self.capabilities))


@dataclass(frozen=True)
class RollbackConfig:
    enabled: bool = True
    on_failure: OnFailure = "ROLLBACK"


@dataclass
class DeploymentResult:
    """Returned once per deploy or rollback call.

    ``audit_trail`` lists every step taken, in order, as readable lines.
    """

    success: bool
    method: DeploymentMethod
    audit_trail: list[str] = field(default_factory=list)
    stack_id: str | None = None
    stack_status: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors
