"""AWS client factory bound to the current credential context."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Literal, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from aws_agent_broker.credentials.context import (
    AWSCredentials,
    ContextChange,
    ContextKind,
    CredentialContext,
)
from aws_agent_broker.credentials.store import CredentialContextStore

logger = logging.getLogger(__name__)

ServiceType = Literal["s3", "cloudformation", "lambda", "iam", "sts", "logs", "cloudtrail"]
SUPPORTED_SERVICES: frozenset[str] = frozenset(
    {"s3", "cloudformation", "lambda", "iam", "sts", "logs", "cloudtrail"}
)

_CLIENT_CACHE_MAX_SIZE = 64

T = TypeVar("T")


@dataclass(frozen=True)
class ClientConfig:
    region: str | None = None
    max_attempts: int | None = None
    timeout_seconds: int | None = None


@dataclass(frozen=True)
class ClientCacheKey:
    service: str
    context_kind: ContextKind
    identity_arn: str
    region: str
    max_attempts: int
    timeout_seconds: int


# Cheapest call per service that proves the credentials still work.
_VALIDATION_PROBES: dict[str, Callable[[Any], object]] = {
    "sts": lambda client: client.get_caller_identity(),
    "s3": lambda client: client.list_buckets(MaxBuckets=1),
    "cloudformation": lambda client: client.list_stacks(StackStatusFilter=["CREATE_COMPLETE"]),
    "lambda": lambda client: client.list_functions(MaxItems=1),
    "iam": lambda client: client.list_roles(MaxItems=1),
    "logs": lambda client: client.describe_log_groups(limit=1),
    "cloudtrail": lambda client: client.describe_trails(),
}


class ClientFactory:
    """Builds and caches boto3 clients for the store's current context.

    The cache is dropped synchronously on every successful context change,
    so a cached client is never handed out for the wrong identity.
    """

    def __init__(
        self,
        store: CredentialContextStore,
        *,
        default_region: str = "us-east-1",
        max_attempts: int = 3,
        timeout_seconds: int = 30,
        validate_cached: bool = True,
    ) -> None:
        self._store = store
        self._default_region = default_region
        self._max_attempts = max_attempts
        self._timeout_seconds = timeout_seconds
        self._validate_cached = validate_cached
        self._cache: OrderedDict[ClientCacheKey, Any] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "clears": 0}
        store.add_listener(self._on_context_change)

    def _on_context_change(self, change: ContextChange) -> None:
        if change.success:
            self.clear_cache()

    def _cache_key(self, service: str, context: CredentialContext, config: ClientConfig) -> ClientCacheKey:
        return ClientCacheKey(
            service=service,
            context_kind=context.kind,
            identity_arn=context.identity.arn if context.identity else "",
            region=config.region or self._default_region,
            max_attempts=config.max_attempts or self._max_attempts,
            timeout_seconds=config.timeout_seconds or self._timeout_seconds,
        )

    def _botocore_config(self, service: str, config: ClientConfig) -> Config:
        timeout = config.timeout_seconds or self._timeout_seconds
        base: dict[str, object] = {
            "read_timeout": timeout,
            "connect_timeout": timeout,
            "retries": {"max_attempts": config.max_attempts or self._max_attempts, "mode": "standard"},
        }
        if service == "s3":
            base["request_checksum_calculation"] = "when_required"
            base["response_checksum_validation"] = "when_required"
        return Config(**base)

    def _build(self, service: str, credentials: AWSCredentials, config: ClientConfig) -> Any:
        if service not in SUPPORTED_SERVICES:
            raise ValueError(f"Unsupported service type: {service}")
        session = boto3.Session(
            region_name=config.region or self._default_region,
            **credentials.session_kwargs(),
        )
        return session.client(service, config=self._botocore_config(service, config))

    def _probe(self, service: str, client: Any) -> bool:
        probe = _VALIDATION_PROBES.get(service)
        if probe is None:
            return True
        try:
            probe(client)
        except (ClientError, BotoCoreError) as exc:
            logger.info("Cached %s client failed validation, rebuilding: %s", service, exc)
            return False
        return True

    def get_client(self, service: ServiceType | str, config: ClientConfig | None = None) -> Any:
        """Return a client for the current context, reusing a validated cached one."""
        config = config or ClientConfig()
        context = self._store.get_current_context()
        key = self._cache_key(service, context, config)

        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            if not self._validate_cached or self._probe(service, cached):
                with self._lock:
                    self._stats["hits"] += 1
                    if key in self._cache:
                        self._cache.move_to_end(key)
                return cached
            with self._lock:
                self._cache.pop(key, None)
                self._stats["evictions"] += 1

        client = self._build(service, self._store.get_current_credentials(), config)
        with self._lock:
            self._stats["misses"] += 1
            self._cache[key] = client
            while len(self._cache) > _CLIENT_CACHE_MAX_SIZE:
                self._cache.popitem(last=False)
                self._stats["evictions"] += 1
        logger.debug("Created %s client for %s context (%s)", service, context.kind, key.region)
        return client

    def create_client_with_credentials(
        self,
        service: ServiceType | str,
        credentials: AWSCredentials,
        config: ClientConfig | None = None,
    ) -> Any:
        """Build an uncached client from explicit credentials, ignoring the store."""
        return self._build(service, credentials, config or ClientConfig())

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._stats["clears"] += 1

    def cache_stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "size": len(self._cache),
                "services": sorted({key.service for key in self._cache}),
                **self._stats,
            }

    @contextmanager
    def context(self, kind: ContextKind) -> Iterator[CredentialContext]:
        """Run the ``with`` body as ``kind``, then restore the prior context.

        Restoration runs on every exit path, including exceptions, and never
        raises a switch error of its own: a prior context that no longer
        verifies is reinstated unverified, so the body's own exception is
        the one that propagates.
        """
        snapshot = self._store.snapshot()
        active = self._store.switch_to(kind)
        self.clear_cache()
        try:
            yield active
        finally:
            try:
                self._store.restore(snapshot, strict=False)
            finally:
                self.clear_cache()

    def with_context(self, kind: ContextKind, operation: Callable[[], T]) -> T:
        with self.context(kind):
            return operation()
