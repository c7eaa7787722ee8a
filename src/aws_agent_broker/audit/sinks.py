"""Destinations for flushed audit batches."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Sequence

from botocore.exceptions import ClientError

from aws_agent_broker.audit.models import AuditEvent, AuditQuery
from aws_agent_broker.errors import AuditWriteError
from aws_agent_broker.utils.serialization import dumps_line
from aws_agent_broker.utils.time import epoch_millis

logger = logging.getLogger(__name__)

# PutLogEvents accepts at most 10,000 events per call.
_MAX_BATCH_EVENTS = 10_000


class LocalAuditFile:
    """Append-only NDJSON file; the durability floor for audit events."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def append(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        payload = "".join(dumps_line(event.to_dict()) + "\n" for event in events)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
        except OSError as exc:
            raise AuditWriteError(f"Failed to write audit log {self.path}: {exc}") from exc

    def read(self) -> list[AuditEvent]:
        if not self.path.exists():
            return []
        events: list[AuditEvent] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(AuditEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed audit line %s:%d: %s", self.path, line_no, exc
                    )
        return events


class CloudWatchLogsSink:
    """Forwards batches to a CloudWatch Logs stream and reads them back."""

    def __init__(
        self,
        client_provider: Callable[[], Any],
        log_group: str,
        log_stream: str,
    ) -> None:
        self._client_provider = client_provider
        self.log_group = log_group
        self.log_stream = log_stream

    def forward(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        client = self._client_provider()
        ordered = sorted(events, key=lambda event: event.timestamp)
        for start in range(0, len(ordered), _MAX_BATCH_EVENTS):
            batch = [
                {"timestamp": epoch_millis(event.timestamp), "message": dumps_line(event.to_dict())}
                for event in ordered[start : start + _MAX_BATCH_EVENTS]
            ]
            self._put(client, batch)

    def _put(self, client: Any, batch: list[dict[str, object]]) -> None:
        request = {
            "logGroupName": self.log_group,
            "logStreamName": self.log_stream,
            "logEvents": batch,
        }
        try:
            client.put_log_events(**request)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise
            logger.info("Creating audit log stream %s/%s", self.log_group, self.log_stream)
            client.create_log_stream(logGroupName=self.log_group, logStreamName=self.log_stream)
            client.put_log_events(**request)

    def query(self, query: AuditQuery) -> list[AuditEvent]:
        client = self._client_provider()
        params: dict[str, object] = {
            "logGroupName": self.log_group,
            "logStreamNames": [self.log_stream],
        }
        if query.start_time is not None:
            params["startTime"] = epoch_millis(query.start_time)
        if query.end_time is not None:
            params["endTime"] = epoch_millis(query.end_time)

        events: list[AuditEvent] = []
        paginator = client.get_paginator("filter_log_events")
        for page in paginator.paginate(**params):
            for item in page.get("events", []):
                try:
                    event = AuditEvent.from_dict(json.loads(item["message"]))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed remote audit event: %s", exc)
                    continue
                if query.matches(event):
                    events.append(event)
        return events
