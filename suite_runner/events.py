import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal
from uuid import UUID

from pydantic import Field

from suite_runner.models import TestResult, TestRun, WireModel


class EventType(StrEnum):
    connected = "connected"
    progress = "progress"
    result = "result"
    complete = "complete"
    error = "error"
    heartbeat = "heartbeat"


TERMINAL_EVENTS = frozenset({EventType.complete, EventType.error})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConnectedPayload(WireModel):
    run_id: UUID
    total: int
    timestamp: datetime = Field(default_factory=_utcnow)


class ProgressPayload(WireModel):
    current: int
    total: int
    iteration: int
    test_case_id: UUID
    test_case_name: str


class CompletePayload(WireModel):
    run_id: UUID
    status: Literal["completed", "incomplete"]
    test_run: TestRun


class ErrorPayload(WireModel):
    message: str
    code: str | None = None
    test_case_id: UUID | None = None


class HeartbeatPayload(WireModel):
    timestamp: datetime = Field(default_factory=_utcnow)


Payload = ConnectedPayload | ProgressPayload | TestResult | CompletePayload | ErrorPayload | HeartbeatPayload


@dataclass(frozen=True)
class Event:
    type: EventType
    data: Payload

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def encode(self) -> str:
        body = json.dumps(self.data.to_wire(), ensure_ascii=False)
        return f"event: {self.type}\ndata: {body}\n\n"


class EventChannel:
    """Outbound queue of run events.

    The orchestrator writes with ``send``; a transport adapter drains it with
    ``async for``. Iteration ends once the channel is closed and emptied.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError(f"Cannot send '{event.type}' on a closed channel")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
