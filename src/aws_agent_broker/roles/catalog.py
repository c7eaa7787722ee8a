"""Discovery and ranking of roles the agent may assume."""

from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import unquote

from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.credentials.client_factory import ClientFactory
from aws_agent_broker.credentials.context import AWSCredentials, ContextKind
from aws_agent_broker.credentials.sources import sanitize_session_name
from aws_agent_broker.domain.operations import OperationContext
from aws_agent_broker.roles.sessions import RoleSession, RoleSessionCache
from aws_agent_broker.utils.time import ensure_utc

logger = logging.getLogger(__name__)

_LIST_ROLES_PAGE_SIZE = 100
# STS minimum; the check session is discarded immediately.
_CHECK_SESSION_SECONDS = 900

# ``{prefix}`` is replaced with the configured role name prefix.
_ROLE_PATTERN_GROUPS: dict[str, tuple[str, ...]] = {
    "deployment": ("{prefix}-deploy-*", "{prefix}-cloudformation-*", "*-deployment-role"),
    "s3": ("{prefix}-s3-*", "{prefix}-storage-*", "*-s3-access-role"),
    "lambda": ("{prefix}-lambda-*", "{prefix}-function-*", "*-lambda-execution-role"),
    "monitoring": ("{prefix}-monitoring-*", "{prefix}-cloudwatch-*", "*-monitoring-role"),
}

_GROUP_ALIASES: dict[str, str] = {
    "cloudformation": "deployment",
    "deployment": "deployment",
    "deploy": "deployment",
    "s3": "s3",
    "storage": "s3",
    "lambda": "lambda",
    "function": "lambda",
    "logs": "monitoring",
    "cloudwatch": "monitoring",
    "monitoring": "monitoring",
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Role:
    arn: str
    name: str
    path: str = "/"
    trust_policy_pattern: str = ""
    tags: Mapping[str, str] = field(default_factory=dict, compare=False)
    created_at: datetime | None = None
    max_session_duration: int = 3600


@dataclass(frozen=True)
class RoleMatch:
    role: Role
    tag_match: bool
    specificity: int
    pattern: str | None = None

    @property
    def sort_key(self) -> tuple[bool, int, datetime]:
        created = ensure_utc(self.role.created_at) if self.role.created_at else _EPOCH
        return (self.tag_match, self.specificity, created)


def pattern_specificity(pattern: str) -> int:
    """Longer literal patterns win; each wildcard costs two points."""
    wildcards = pattern.count("*") + pattern.count("?")
    return len(pattern) - 2 * wildcards


def matches_pattern(name: str, pattern: str) -> bool:
    return fnmatch.fnmatchcase(name.lower(), pattern.lower())


def _trust_principals(document: Any) -> str:
    """Flatten the principals of a trust policy into ``a,b,c``."""
    if isinstance(document, str):
        try:
            document = json.loads(unquote(document))
        except json.JSONDecodeError:
            return ""
    if not isinstance(document, Mapping):
        return ""
    principals: list[str] = []
    statements = document.get("Statement", [])
    if isinstance(statements, Mapping):
        statements = [statements]
    for statement in statements:
        principal = statement.get("Principal", {}) if isinstance(statement, Mapping) else {}
        if isinstance(principal, str):
            principals.append(principal)
            continue
        for value in principal.values():
            if isinstance(value, str):
                principals.append(value)
            else:
                principals.extend(str(v) for v in value)
    return ",".join(sorted(set(principals)))


class RoleCatalog:
    def __init__(
        self,
        factory: ClientFactory,
        *,
        name_prefix: str = "agent",
        path_prefix: str = "/",
        operation_tag_key: str = "agent:operations",
        fetch_tags: bool = True,
        sessions: RoleSessionCache | None = None,
    ) -> None:
        self._factory = factory
        self._name_prefix = name_prefix
        self._path_prefix = path_prefix
        self._operation_tag_key = operation_tag_key
        self._fetch_tags = fetch_tags
        self._sessions = sessions or RoleSessionCache()
        self._roles: list[Role] | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Discovery

    def list_available_roles(self, refresh: bool = False) -> list[Role]:
        """Enumerate roles under the path prefix; cached until ``invalidate``."""
        with self._lock:
            if self._roles is not None and not refresh:
                return list(self._roles)

        iam = self._factory.get_client("iam")
        roles: list[Role] = []
        paginator = iam.get_paginator("list_roles")
        for page in paginator.paginate(
            PathPrefix=self._path_prefix,
            PaginationConfig={"PageSize": _LIST_ROLES_PAGE_SIZE},
        ):
            for item in page.get("Roles", []):
                tags = self._role_tags(iam, item)
                roles.append(self._role_from_response(item, tags))

        with self._lock:
            self._roles = roles
        logger.info("Discovered %d roles under %s", len(roles), self._path_prefix)
        return list(roles)

    def invalidate(self) -> None:
        with self._lock:
            self._roles = None

    def _role_tags(self, iam: Any, item: Mapping[str, Any]) -> dict[str, str]:
        if "Tags" in item:
            return {tag["Key"]: tag["Value"] for tag in item["Tags"]}
        if not self._fetch_tags:
            return {}
        try:
            response = iam.list_role_tags(RoleName=item["RoleName"])
        except ClientError as exc:
            logger.debug("Cannot read tags for %s: %s", item["RoleName"], exc)
            return {}
        return {tag["Key"]: tag["Value"] for tag in response.get("Tags", [])}

    @staticmethod
    def _role_from_response(item: Mapping[str, Any], tags: Mapping[str, str]) -> Role:
        return Role(
            arn=item["Arn"],
            name=item["RoleName"],
            path=item.get("Path", "/"),
            trust_policy_pattern=_trust_principals(item.get("AssumeRolePolicyDocument")),
            tags=dict(tags),
            created_at=item.get("CreateDate"),
            max_session_duration=item.get("MaxSessionDuration", 3600),
        )

    def get_role(self, role_arn: str) -> Role | None:
        """Look a role up by ARN, from the cache first and then IAM GetRole."""
        with self._lock:
            cached = list(self._roles or [])
        for role in cached:
            if role.arn == role_arn:
                return role

        name = role_arn.rsplit("/", 1)[-1]
        iam = self._factory.get_client("iam")
        try:
            item = iam.get_role(RoleName=name)["Role"]
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "NoSuchEntity":
                return None
            raise
        return self._role_from_response(item, self._role_tags(iam, item))

    # ------------------------------------------------------------------
    # Matching

    def patterns_for(self, context: OperationContext) -> tuple[str, ...]:
        """Name patterns that fit ``context``, most specific first."""
        candidates = [context.service.lower(), context.operation.lower()]
        candidates.extend(context.operation.lower().replace("_", "-").split("-"))
        groups: list[str] = []
        for candidate in candidates:
            group = _GROUP_ALIASES.get(candidate)
            if group and group not in groups:
                groups.append(group)

        patterns: list[str] = []
        for group in groups:
            for template in _ROLE_PATTERN_GROUPS[group]:
                patterns.append(template.format(prefix=self._name_prefix))
        patterns.append(f"*{context.operation.lower()}*")
        if context.service.lower() != context.operation.lower():
            patterns.append(f"{self._name_prefix}-*{context.service.lower()}*")
        return tuple(sorted(dict.fromkeys(patterns), key=pattern_specificity, reverse=True))

    def operations_for(self, role: Role) -> frozenset[str]:
        raw = role.tags.get(self._operation_tag_key, "")
        return frozenset(value.strip().lower() for value in raw.split(",") if value.strip())

    def rank_roles(self, context: OperationContext) -> list[RoleMatch]:
        """All candidate roles for ``context``, best first.

        Ordering: operation-tag match, then the specificity of the most
        specific matching name pattern, then the most recently created role.
        """
        patterns = self.patterns_for(context)
        wanted = {context.operation.lower(), context.service.lower()}
        matches: list[RoleMatch] = []
        for role in self.list_available_roles():
            tag_match = bool(self.operations_for(role) & wanted)
            best_pattern = next((p for p in patterns if matches_pattern(role.name, p)), None)
            if not tag_match and best_pattern is None:
                continue
            matches.append(
                RoleMatch(
                    role=role,
                    tag_match=tag_match,
                    specificity=pattern_specificity(best_pattern) if best_pattern else 0,
                    pattern=best_pattern,
                )
            )
        matches.sort(key=lambda match: match.sort_key, reverse=True)
        return matches

    def find_best_role(self, context: OperationContext) -> Role | None:
        try:
            ranked = self.rank_roles(context)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Role discovery failed for %s: %s", context.key, exc)
            return None
        if not ranked:
            logger.info("No matching roles found for %s", context.key)
            return None
        best = ranked[0]
        logger.info("Best role for %s: %s (pattern=%s)", context.key, best.role.name, best.pattern)
        return best.role

    # ------------------------------------------------------------------
    # Sessions

    def register_session(self, session: RoleSession) -> None:
        self._sessions.put(session)

    def get_session(self, role_arn: str, origin_kind: ContextKind) -> RoleSession | None:
        return self._sessions.get(role_arn, origin_kind)

    def verify_role_assumption(self, role_arn: str) -> bool:
        """Assume ``role_arn`` and confirm the result with GetCallerIdentity.

        The temporary session is thrown away; the current context is unchanged.
        """
        session_name = sanitize_session_name(f"{self._name_prefix}-check-{int(time.time())}")
        try:
            response = self._factory.get_client("sts").assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=_CHECK_SESSION_SECONDS,
            )
            creds = response["Credentials"]
            credentials = AWSCredentials(
                access_key_id=creds["AccessKeyId"],
                secret_access_key=creds["SecretAccessKey"],
                session_token=creds["SessionToken"],
            )
            identity = self._factory.create_client_with_credentials(
                "sts", credentials
            ).get_caller_identity()
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Role assumption check failed for %s: %s", role_arn, exc)
            return False
        role_name = role_arn.rsplit("/", 1)[-1]
        verified = f":assumed-role/{role_name}/" in identity.get("Arn", "")
        if not verified:
            logger.warning("Role assumption check for %s returned %s", role_arn, identity.get("Arn"))
        return verified

    def get_active_sessions(self) -> list[RoleSession]:
        return self._sessions.active()

    def cleanup_expired_sessions(self) -> int:
        removed = self._sessions.sweep()
        if removed:
            logger.info("Removed %d expired role sessions", removed)
        return removed
