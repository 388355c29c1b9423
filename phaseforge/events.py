"""
PHASEFORGE Event Stream

Progress of a run is exposed as an ordered sequence of typed events
pushed through a bounded channel. The producer (the run's background
task) blocks when the consumer falls behind; closing the receiving end
is the only cancellation signal.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from phaseforge.pipeline.review import Issue

CHANNEL_CAPACITY = 64
NO_CHANGES = "(no changes)"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class RunEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class Started(RunEvent):
    kind: Literal["started"] = "started"
    feature: str
    total_phases: int


class PhaseStarted(RunEvent):
    kind: Literal["phase_started"] = "phase_started"
    index: int  # 0-based position in the plan
    name: str


class CheckResult(RunEvent):
    kind: Literal["check_result"] = "check_result"
    name: str
    passed: bool


class PhaseCommitted(RunEvent):
    kind: Literal["phase_committed"] = "phase_committed"
    index: int
    commit: str  # sha, or NO_CHANGES


class ReviewStarted(RunEvent):
    kind: Literal["review_started"] = "review_started"


class ReviewCompleted(RunEvent):
    kind: Literal["review_completed"] = "review_completed"
    issue_count: int
    issues: list[Issue] = Field(default_factory=list)


class VerificationStarted(RunEvent):
    kind: Literal["verification_started"] = "verification_started"


class VerificationCompleted(RunEvent):
    kind: Literal["verification_completed"] = "verification_completed"
    passed: bool
    details: str = ""


class ChangeRequestCreated(RunEvent):
    kind: Literal["change_request_created"] = "change_request_created"
    url: str


class Finished(RunEvent):
    kind: Literal["finished"] = "finished"


class Error(RunEvent):
    """Reported failure. Only `fatal` errors end the run."""
    kind: Literal["error"] = "error"
    detail: str
    error_kind: str = "other"
    fatal: bool = True


Event = Annotated[
    Union[
        Started, PhaseStarted, CheckResult, PhaseCommitted,
        ReviewStarted, ReviewCompleted, VerificationStarted, VerificationCompleted,
        ChangeRequestCreated, Finished, Error,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

_END = object()


class EventChannel:
    """Bounded single-producer, single-consumer event queue."""

    def __init__(self, capacity: int = CHANNEL_CAPACITY):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=capacity)
        self._receiver_closed = False
        self._sender_closed = False
        self._getter: asyncio.Future | None = None

    @property
    def receiver_closed(self) -> bool:
        return self._receiver_closed

    async def send(self, event: RunEvent) -> bool:
        """Deliver an event, waiting for room. False once the receiver is gone."""
        if self._receiver_closed or self._sender_closed:
            return False
        await self._queue.put(event)
        return not self._receiver_closed

    async def close(self) -> None:
        """Sender side: mark end of stream."""
        if self._sender_closed:
            return
        self._sender_closed = True
        if not self._receiver_closed:
            await self._queue.put(_END)

    async def receive(self) -> RunEvent | None:
        if self._receiver_closed:
            return None
        self._getter = asyncio.ensure_future(self._queue.get())
        try:
            item = await self._getter
        except asyncio.CancelledError:
            if self._receiver_closed:
                return None
            raise
        finally:
            self._getter = None
        if item is _END:
            self._receiver_closed = True
            return None
        return item

    def close_receiver(self) -> None:
        self._receiver_closed = True
        if self._getter is not None and not self._getter.done():
            self._getter.cancel()
        # Drain so a producer blocked on a full queue wakes up.
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break


class RunStream:
    """
    Receiving end of a run.

        async with await engine.run("0001_auth") as stream:
            async for event in stream:
                ...

    Closing the stream stops further events from being emitted. Work
    already in flight (an agent call or a shell check) finishes first.
    """

    def __init__(self, channel: EventChannel, task: asyncio.Task | None = None):
        self._channel = channel
        self.task = task

    async def next(self) -> RunEvent | None:
        return await self._channel.receive()

    def close(self) -> None:
        self._channel.close_receiver()

    @property
    def closed(self) -> bool:
        return self._channel.receiver_closed

    async def wait(self) -> None:
        """Wait for the background task to finish."""
        if self.task is not None:
            await self.task

    async def collect(self) -> list[RunEvent]:
        events = []
        async for event in self:
            events.append(event)
        return events

    def __aiter__(self) -> "RunStream":
        return self

    async def __anext__(self) -> RunEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "RunStream":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()
