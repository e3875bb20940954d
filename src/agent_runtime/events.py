# events.py
# Runtime events and the emitter that fans them out.
#
# Events are plain dicts with a `type` key so any renderer can consume them
# structurally. Subscribers are called synchronously in subscription order;
# the emitter never buffers or reorders.

import logging
from collections.abc import Callable
from typing import Any, Literal

logger = logging.getLogger(__name__)

Event = dict[str, Any]
Subscriber = Callable[[Event], None]

StatusLevel = Literal["info", "warn", "error", "success"]


class EventEmitter:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self.history: list[Event] | None = None

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def record(self) -> list[Event]:
        """Start keeping every emitted event in `history` (used by tests and debugging)."""
        self.history = []
        return self.history

    def emit(self, event: Event) -> None:
        if "type" not in event:
            raise ValueError("runtime events require a 'type' key")
        if self.history is not None:
            self.history.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("event subscriber failed for %s", event["type"])

    def __call__(self, event: Event) -> None:
        self.emit(event)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def status(level: StatusLevel, message: str, details: Any = None) -> Event:
    event: Event = {"type": "status", "level": level, "message": message}
    if details is not None:
        event["details"] = details
    return event


def error(message: str, details: Any = None, raw: str | None = None,
          attempts: list[Any] | None = None) -> Event:
    event: Event = {"type": "error", "message": message}
    if details is not None:
        event["details"] = details
    if raw is not None:
        event["raw"] = raw
    if attempts is not None:
        event["attempts"] = attempts
    return event


def debug(payload: Any) -> Event:
    return {"type": "debug", "payload": payload}


def thinking(state: Literal["start", "stop"]) -> Event:
    return {"type": "thinking", "state": state}


def context_usage(usage: dict[str, Any]) -> Event:
    return {"type": "context-usage", "usage": usage}


def plan(steps: list[dict[str, Any]]) -> Event:
    return {"type": "plan", "plan": steps}


def planning(state: Literal["start", "update", "finish"], steps: list[dict[str, Any]] | None) -> Event:
    return {"type": "planning", "state": state, "plan": steps}


def assistant_message(message: str) -> Event:
    return {"type": "assistant-message", "message": message}


def request_input(prompt: str, metadata: dict[str, Any] | None = None) -> Event:
    return {"type": "request-input", "prompt": prompt, "metadata": metadata or {}}


def command_result(command: dict[str, Any], result: dict[str, Any], preview: dict[str, Any]) -> Event:
    return {"type": "command-result", "command": command, "result": result, "preview": preview}
