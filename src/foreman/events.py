"""Live event feed for observers of task and DAG progress.

Events are appended to a Redis Stream (XADD/XREAD) so dashboards and CLIs
can follow a DAG without sharing process state with the engine. Publishing
is best-effort: Redis being down never affects orchestration.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("FOREMAN_REDIS_URL", "redis://localhost:6379/0")

EVENTS_STREAM = "foreman:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("FOREMAN_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1  # Bump when payload shape changes

_pool = ConnectionPool.from_url(REDIS_URL)


class EventEmitter(Protocol):
    def __call__(
        self,
        event_type: str,
        entity_id: str,
        status: str,
        *,
        project: str,
        dag_id: str | None = None,
        source: str = "engine",
        extra: dict | None = None,
    ) -> None: ...


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def build_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    project: str,
    dag_id: str | None = None,
    source: str = "engine",
    extra: dict | None = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "dag_id": dag_id,
        "project": project,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    return event


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    project: str,
    dag_id: str | None = None,
    source: str = "engine",
    extra: dict | None = None,
) -> None:
    """Publish an event to the Redis Stream. Best-effort, never raises on Redis errors.

    *extra* is merged into the payload (node snapshots, output lines).
    """
    event = build_event(
        event_type, entity_id, status, project=project, dag_id=dag_id, source=source, extra=extra
    )
    payload = json.dumps(event, default=str)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


class EventRecorder:
    """In-process emitter that keeps every event, for embedders and tests."""

    def __init__(self, forward: Callable[..., None] | None = None) -> None:
        self.events: list[dict[str, Any]] = []
        self._forward = forward

    def __call__(
        self,
        event_type: str,
        entity_id: str,
        status: str,
        *,
        project: str,
        dag_id: str | None = None,
        source: str = "engine",
        extra: dict | None = None,
    ) -> None:
        self.events.append(
            build_event(
                event_type,
                entity_id,
                status,
                project=project,
                dag_id=dag_id,
                source=source,
                extra=extra,
            )
        )
        if self._forward is not None:
            self._forward(
                event_type,
                entity_id,
                status,
                project=project,
                dag_id=dag_id,
                source=source,
                extra=extra,
            )

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]


DAG_FINISHED_EVENTS = frozenset({"dag:completed", "dag:cancelled"})


@dataclass(frozen=True)
class EventFilter:
    """Selects events by DAG, node or task id, project and type prefix.

    ``types`` holds prefixes, so ``("dag:node:",)`` follows node progress
    without the DAG lifecycle events and ``("task:",)`` only the coordinator.
    """

    dag_id: str | None = None
    entity_id: str | None = None
    project: str | None = None
    types: tuple[str, ...] = ()

    def matches(self, event: dict[str, Any]) -> bool:
        if self.dag_id and event.get("dag_id") != self.dag_id:
            return False
        if self.entity_id and event.get("id") != self.entity_id:
            return False
        if self.project and event.get("project") != self.project:
            return False
        if self.types:
            return str(event.get("type", "")).startswith(self.types)
        return True

    def finishes(self, event: dict[str, Any]) -> bool:
        """True when *event* ends the DAG this filter follows."""
        if not self.dag_id or event.get("id") != self.dag_id:
            return False
        return event.get("type") in DAG_FINISHED_EVENTS


def decode_entry(entry_id: str | bytes, fields: dict) -> dict[str, Any] | None:
    """Parse one stream entry written by ``publish_event``; None if malformed."""
    raw = fields.get("data") or fields.get(b"data")
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        event = json.loads(raw) if raw else None
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(event, dict):
        return None
    event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
    return event


class EventSubscriber:
    """Follows the event stream, yielding events that pass an EventFilter.

    ``next()`` blocks up to ``timeout`` seconds (XREAD BLOCK) and returns
    None when nothing matching arrived. Entries read in one batch are
    buffered, so none are lost between calls. When following a DAG with
    ``until_finished`` the iterator stops after that DAG's completed or
    cancelled event. Without Redis every call sleeps ``timeout`` and
    returns None.
    """

    def __init__(
        self,
        event_filter: EventFilter | None = None,
        *,
        timeout: float = 30.0,
        replay: bool = False,
        until_finished: bool = False,
    ):
        self.filter = event_filter or EventFilter()
        self.timeout = timeout
        self.until_finished = until_finished
        self._cursor = "0" if replay else "$"
        self._buffer: deque[dict[str, Any]] = deque()
        self._finished = False
        try:
            self._redis: Redis | None = get_redis()
            self._redis.ping()
        except RedisError:
            log.warning("Event stream unavailable (Redis down); subscriber will idle")
            self._redis = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    def __iter__(self):
        return self

    def _fill(self) -> bool:
        batch = self._redis.xread(
            {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=50
        )
        if not batch:
            return False
        for _stream, entries in batch:
            for entry_id, fields in entries:
                self._cursor = entry_id
                event = decode_entry(entry_id, fields)
                if event is not None and self.filter.matches(event):
                    self._buffer.append(event)
        return True

    def __next__(self) -> dict[str, Any] | None:
        if self._finished:
            raise StopIteration
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while not self._buffer:
            if not self._fill():
                return None
        event = self._buffer.popleft()
        if self.until_finished and self.filter.finishes(event):
            self._finished = True
        return event


def subscribe_events(
    *,
    dag_id: str | None = None,
    entity_id: str | None = None,
    project: str | None = None,
    types: tuple[str, ...] = (),
    timeout: float = 30.0,
    replay: bool = False,
    until_finished: bool = False,
) -> EventSubscriber:
    return EventSubscriber(
        EventFilter(dag_id=dag_id, entity_id=entity_id, project=project, types=tuple(types)),
        timeout=timeout,
        replay=replay,
        until_finished=until_finished,
    )
