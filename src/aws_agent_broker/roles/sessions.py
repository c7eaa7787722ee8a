"""Cache of assumed-role sessions."""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from aws_agent_broker.credentials.context import AWSCredentials, ContextKind
from aws_agent_broker.utils.time import ensure_utc, utc_now

SessionKey = tuple[str, str]


@dataclass(frozen=True)
class RoleSession:
    """Temporary credentials for ``role_arn``.

    ``origin_kind`` and ``origin_arn`` record the context that called
    AssumeRole; the session may only be re-entered from that kind.
    """

    role_arn: str
    session_name: str
    credentials: AWSCredentials = field(repr=False)
    expires_at: datetime
    origin_kind: ContextKind
    origin_arn: str | None = None
    assumed_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> SessionKey:
        return (self.origin_kind, self.role_arn)

    def is_expired(self, now: datetime | None = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utc_now())

    def is_expiring_soon(self, buffer_seconds: int, now: datetime | None = None) -> bool:
        current = now or utc_now()
        return ensure_utc(self.expires_at) <= current + timedelta(seconds=buffer_seconds)


class RoleSessionCache:
    """LRU of role sessions keyed by (origin kind, role ARN)."""

    def __init__(self, refresh_buffer_seconds: int = 300, max_entries: int = 100) -> None:
        self._refresh_buffer_seconds = refresh_buffer_seconds
        self._max_entries = max_entries
        self._sessions: OrderedDict[SessionKey, RoleSession] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, session: RoleSession) -> None:
        with self._lock:
            self._sessions[session.key] = session
            self._sessions.move_to_end(session.key)
            while len(self._sessions) > self._max_entries:
                self._sessions.popitem(last=False)

    def get(self, role_arn: str, origin_kind: ContextKind) -> RoleSession | None:
        """Return the session ``origin_kind`` holds for ``role_arn`` unless it is inside the refresh buffer."""
        key = (origin_kind, role_arn)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            if session.is_expiring_soon(self._refresh_buffer_seconds):
                return None
            self._sessions.move_to_end(key)
            return session

    def active(self) -> list[RoleSession]:
        now = utc_now()
        with self._lock:
            return [s for s in self._sessions.values() if not s.is_expired(now)]

    def sweep(self) -> int:
        """Drop expired sessions and return how many were removed."""
        now = utc_now()
        with self._lock:
            expired = [key for key, s in self._sessions.items() if s.is_expired(now)]
            for key in expired:
                del self._sessions[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
