"""Session progress events and their server-sent-event encoding."""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator

EVENT_NAMES = frozenset(
    {"plan", "step_start", "progress", "task-done", "file-update", "snapshot", "result", "error", "done"}
)
HEARTBEAT = "heartbeat"
HEARTBEAT_FRAME = ": heartbeat\n\n"


@dataclass(slots=True)
class AgentEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.event not in EVENT_NAMES and self.event != HEARTBEAT:
            raise ValueError(f"Unknown event name: {self.event}")

    @property
    def is_heartbeat(self) -> bool:
        return self.event == HEARTBEAT

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


def encode_sse(event: AgentEvent) -> str:
    """Render ``event`` as one SSE frame; heartbeats become comment frames."""
    if event.is_heartbeat:
        return HEARTBEAT_FRAME
    payload = json.dumps(event.data, default=str, ensure_ascii=False)
    return f"event: {event.event}\ndata: {payload}\n\n"


def heartbeat() -> AgentEvent:
    return AgentEvent(HEARTBEAT)


_END = object()


def with_heartbeat(events: Iterable[AgentEvent], interval: float) -> Iterator[AgentEvent]:
    """Yield ``events``, inserting a heartbeat whenever ``interval`` seconds pass without one.

    The source is drained on a daemon thread so a slow step does not stall
    the heartbeat; an exception raised by the source is re-raised here.
    """
    if interval <= 0:
        yield from events
        return
    buffer: "queue.Queue[Any]" = queue.Queue()

    def _pump() -> None:
        try:
            for item in events:
                buffer.put(item)
        except BaseException as error:  # re-raised on the consumer side
            buffer.put(error)
        finally:
            buffer.put(_END)

    worker = threading.Thread(target=_pump, name="forge-event-pump", daemon=True)
    worker.start()
    while True:
        try:
            item = buffer.get(timeout=interval)
        except queue.Empty:
            yield heartbeat()
            continue
        if item is _END:
            break
        if isinstance(item, BaseException):
            raise item
        yield item
    worker.join(timeout=interval)


__all__ = [
    "AgentEvent",
    "EVENT_NAMES",
    "HEARTBEAT_FRAME",
    "encode_sse",
    "heartbeat",
    "with_heartbeat",
]
