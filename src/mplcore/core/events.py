"""
Event bus and the event payloads a VM publishes.

Event names:
- ``tick``: TickEvent after every committed tick
- ``rulesReloaded`` / ``rulesReloadError``: outcome of ``apply_staged``
- ``ruleDebug``: RuleDebugTrace for a tick that touched the debug target
- ``error``: ErrorEvent for errors caught at the ``execute`` boundary
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

TICK = "tick"
RULES_RELOADED = "rulesReloaded"
RULES_RELOAD_ERROR = "rulesReloadError"
RULE_DEBUG = "ruleDebug"
ERROR = "error"

EVENT_NAMES = frozenset({TICK, RULES_RELOADED, RULES_RELOAD_ERROR, RULE_DEBUG, ERROR})

Listener = Callable[[Any], None]


def now_ms() -> int:
    """Wall-clock timestamp in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TickEvent:
    step: int
    changes: int  # voxels changed by the tick
    duration_ms: float
    t: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class RulesReloaded:
    source_hash: str
    byte_size: int
    at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class RulesReloadError:
    errors: list[str]
    at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    line: int = 0
    col: int = 0
    kind: Optional[str] = None  # exception class name
    at: int = field(default_factory=now_ms)


class EventBus:
    """Synchronous publish/subscribe keyed by event name."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, name: str, listener: Listener) -> Callable[[], None]:
        """Subscribe; returns a function that removes the subscription."""
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event {name!r}; expected one of {sorted(EVENT_NAMES)}")
        self._listeners[name].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[name]:
                self._listeners[name].remove(listener)

        return unsubscribe

    def emit(self, name: str, payload: Any) -> None:
        # A failing listener must not break the engine loop that emitted
        for listener in list(self._listeners.get(name, ())):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %r failed", name)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))
