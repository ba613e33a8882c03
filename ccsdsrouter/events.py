# ccsdsrouter/events.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .utils import get_logger


class EventKind(str, Enum):
    RUN_STARTED = "run_started"
    RUN_STOPPED = "run_stopped"
    FRAME_ACCEPTED = "frame_accepted"
    FRAME_REJECTED = "frame_rejected"
    STREAM_ERROR = "stream_error"
    TRANSPORT_ERROR = "transport_error"
    PEER_CONNECTED = "peer_connected"
    PEER_DISCONNECTED = "peer_disconnected"


_LEVELS = {
    EventKind.RUN_STARTED: logging.INFO,
    EventKind.RUN_STOPPED: logging.INFO,
    EventKind.FRAME_ACCEPTED: logging.DEBUG,
    EventKind.FRAME_REJECTED: logging.DEBUG,
    EventKind.STREAM_ERROR: logging.WARNING,
    EventKind.TRANSPORT_ERROR: logging.ERROR,
    EventKind.PEER_CONNECTED: logging.INFO,
    EventKind.PEER_DISCONNECTED: logging.INFO,
}


@dataclass(frozen=True)
class RouteEvent:
    kind: EventKind
    ts: float
    fields: Dict[str, Any] = field(default_factory=dict)

    def message(self) -> str:
        tag = self.kind.value.upper()
        body = " ".join(f"{k}={v}" for k, v in self.fields.items())
        return f"[{tag}] {body}" if body else f"[{tag}]"


Listener = Callable[[RouteEvent], None]


class EventLog:
    """
    Structured events for one run. Every event goes to the ccsdsrouter.events
    logger (queue-backed once utils.setup() ran) and to the optional listener.
    The listener runs on the pipeline thread that raised the event and should
    return quickly.
    """

    def __init__(self, listener: Optional[Listener] = None, logger: Optional[logging.Logger] = None):
        self.listener = listener
        self.logger = logger or get_logger("events")

    def emit(self, kind: EventKind, **fields) -> RouteEvent:
        ev = RouteEvent(kind=kind, ts=time.time(), fields=fields)
        level = _LEVELS[kind]
        if self.logger.isEnabledFor(level):
            self.logger.log(level, ev.message())
        if self.listener is not None:
            self.listener(ev)
        return ev
