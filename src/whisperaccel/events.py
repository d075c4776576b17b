"""Structured, correlated trace events for every decision point.

Each top-level selection/load/recovery workflow mints one correlation id
and threads it through every event it emits, so the full decision trace
can be reconstructed afterwards:

    sink = MemoryEventSink()
    emitter = EventEmitter(sink)
    cid = new_correlation_id()
    emitter.detection("detection_started", {"model": "base"}, cid)
    sink.names(cid)  # ["detection_started"]
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .utils import now_ms

logger = logging.getLogger(__name__)


class EventCategory:
    GENERAL = "general"
    GPU_DETECTION = "gpu_detection"
    BACKEND_LOADING = "backend_loading"
    OPENVINO_BACKEND = "openvino_backend"
    ERROR_RECOVERY = "error_recovery"
    PERFORMANCE = "performance"


_SEVERITY_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_DETECTION_EVENTS = {
    "detection_started": ("GPU detection started", "info"),
    "gpu_found": ("GPU device detected", "success"),
    "gpu_validated": ("GPU device validated", "success"),
    "detection_completed": ("GPU detection completed", "info"),
    "detection_failed": ("GPU detection failed", "error"),
    "fallback_chain_started": ("Fallback chain started", "warning"),
    "fallback_chain_success": ("Fallback chain succeeded", "success"),
    "fallback_chain_option_failed": ("Fallback chain option failed", "warning"),
}

_LOADING_EVENTS = {
    "load_attempt": ("Attempting to load {kind} backend", "info"),
    "load_success": ("{kind} backend loaded successfully", "success"),
    "load_failed": ("{kind} backend loading failed", "error"),
    "fallback_used": ("Using fallback for {kind} backend", "warning"),
}

_OPENVINO_EVENTS = {
    "loading_initiated": ("OpenVINO backend loading initiated", "info"),
    "loading_success": ("OpenVINO backend loaded successfully", "success"),
    "loading_failed": ("OpenVINO backend loading failed", "error"),
    "validation_started": ("OpenVINO backend validation started", "info"),
    "validation_passed": ("OpenVINO backend validation passed", "success"),
    "validation_failed": ("OpenVINO backend validation failed", "error"),
}


def new_correlation_id() -> str:
    return f"op_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class TraceEvent:
    name: str
    category: str
    severity: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "timestamp_ms": self.timestamp_ms,
        }


EventSink = Callable[[TraceEvent], None]


class MemoryEventSink:
    """Bounded in-memory event store (oldest events are dropped first)."""

    def __init__(self, max_events: int = 1000) -> None:
        self._events: Deque[TraceEvent] = deque(maxlen=max_events)

    def __call__(self, event: TraceEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[TraceEvent]:
        return list(self._events)

    def for_correlation(self, correlation_id: str) -> List[TraceEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    def names(self, correlation_id: Optional[str] = None) -> List[str]:
        if correlation_id is None:
            return [e.name for e in self._events]
        return [e.name for e in self.for_correlation(correlation_id)]

    def clear(self) -> None:
        self._events.clear()


class EventEmitter:
    """Logs every event and forwards it to an optional sink."""

    def __init__(self, sink: Optional[EventSink] = None) -> None:
        self.sink = sink

    def emit(
        self,
        name: str,
        message: str,
        *,
        category: str = EventCategory.GENERAL,
        severity: str = "info",
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> TraceEvent:
        event = TraceEvent(
            name=name,
            category=category,
            severity=severity,
            message=message,
            context=dict(context or {}),
            correlation_id=correlation_id,
            timestamp_ms=now_ms(),
        )
        level = _SEVERITY_LEVELS.get(severity, logging.INFO)
        logger.log(level, "[%s] %s", category, message, extra={"correlation_id": correlation_id})
        if logger.isEnabledFor(logging.DEBUG) and event.context:
            logger.debug("Context for %s: %s", name, event.context)

        if self.sink is not None:
            try:
                self.sink(event)
            except Exception:
                # Fire-and-forget: a broken trace sink must not break selection.
                logger.exception("Event sink failed for %s", name)
        return event

    def detection(
        self,
        event: str,
        context: Dict[str, Any],
        correlation_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> TraceEvent:
        """Emit a GPU detection event; ``platform`` is the platform id the selection ran for."""
        message, severity = _DETECTION_EVENTS[event]
        payload: Dict[str, Any] = {"event": event}
        if platform:
            payload["platform"] = platform
        payload.update(context)
        if event == "gpu_found" and context.get("gpu_type"):
            status = "found" if context.get("available") else "not available"
            message = f"{str(context['gpu_type']).upper()} GPU {status}"
        return self.emit(
            event,
            message,
            category=EventCategory.GPU_DETECTION,
            severity=severity,
            context=payload,
            correlation_id=correlation_id,
        )

    def loading(
        self,
        event: str,
        kind: str,
        context: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> TraceEvent:
        template, severity = _LOADING_EVENTS[event]
        return self.emit(
            event,
            template.format(kind=kind),
            category=EventCategory.BACKEND_LOADING,
            severity=severity,
            context={"event": event, "backend_kind": kind, **context},
            correlation_id=correlation_id,
        )

    def openvino(self, event: str, context: Dict[str, Any], correlation_id: Optional[str] = None) -> TraceEvent:
        message, severity = _OPENVINO_EVENTS[event]
        return self.emit(
            f"openvino_{event}",
            message,
            category=EventCategory.OPENVINO_BACKEND,
            severity=severity,
            context={"event": event, **context},
            correlation_id=correlation_id,
        )

    def recovery(
        self,
        name: str,
        message: str,
        severity: str = "info",
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> TraceEvent:
        return self.emit(
            name,
            message,
            category=EventCategory.ERROR_RECOVERY,
            severity=severity,
            context=context,
            correlation_id=correlation_id,
        )

    def performance(
        self,
        operation: str,
        metrics: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> TraceEvent:
        return self.emit(
            "performance_metrics",
            f"Performance metrics for {operation}",
            category=EventCategory.PERFORMANCE,
            context={"operation": operation, **metrics},
            correlation_id=correlation_id,
        )
