"""Tests for trace events and user-facing error messages."""

import re

import pytest

from whisperaccel.errors import (
    InvalidStructure,
    LoadFailed,
    ModuleNotFound,
    ValidationTimeout,
    user_friendly_message,
)
from whisperaccel.events import (
    EventCategory,
    EventEmitter,
    MemoryEventSink,
    new_correlation_id,
)


def test_correlation_ids_are_opaque_and_unique():
    ids = {new_correlation_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(re.fullmatch(r"op_[0-9a-f]{16}", i) for i in ids)


def test_memory_sink_is_bounded():
    sink = MemoryEventSink(max_events=3)
    emitter = EventEmitter(sink)
    for i in range(5):
        emitter.emit(f"e{i}", "message")
    assert sink.names() == ["e2", "e3", "e4"]
    sink.clear()
    assert sink.events == []


def test_failing_sink_does_not_break_the_caller():
    def broken(event):
        raise OSError("disk full")

    event = EventEmitter(broken).emit("detection_started", "GPU detection started")
    assert event.name == "detection_started"


def test_for_correlation_filters_events():
    sink = MemoryEventSink()
    emitter = EventEmitter(sink)
    emitter.detection("detection_started", {}, "op_a")
    emitter.detection("detection_started", {}, "op_b")
    emitter.detection("detection_completed", {}, "op_a")
    assert sink.names("op_a") == ["detection_started", "detection_completed"]


class TestTypedHelpers:
    """Tests for the category-specific emit helpers."""

    def test_gpu_found_message(self):
        event = EventEmitter().detection("gpu_found", {"gpu_type": "intel", "available": False})
        assert event.message == "INTEL GPU not available"
        assert event.category == EventCategory.GPU_DETECTION
        assert event.severity == "success"

    def test_loading_message_names_the_backend(self):
        event = EventEmitter().loading("load_failed", "openvino", {"error": "x"})
        assert event.message == "openvino backend loading failed"
        assert event.severity == "error"
        assert event.context["backend_kind"] == "openvino"

    def test_openvino_events_are_prefixed(self):
        event = EventEmitter().openvino("validation_passed", {})
        assert event.name == "openvino_validation_passed"
        assert event.category == EventCategory.OPENVINO_BACKEND

    def test_performance_metrics(self):
        event = EventEmitter().performance("cuda_backend_load", {"load_time_ms": 12})
        assert event.name == "performance_metrics"
        assert event.context == {"operation": "cuda_backend_load", "load_time_ms": 12}

    def test_unknown_detection_event(self):
        with pytest.raises(KeyError):
            EventEmitter().detection("made_up", {})

    def test_to_dict(self):
        event = EventEmitter().recovery("recovery_attempt", "Attempting", "info", {"attempt": 1}, "op_x")
        data = event.to_dict()
        assert data["correlation_id"] == "op_x"
        assert data["category"] == EventCategory.ERROR_RECOVERY
        assert data["timestamp_ms"] > 0


class TestErrors:
    """Tests for the error taxonomy and friendly messages."""

    def test_retryable_flags(self):
        assert ModuleNotFound("x").retryable is False
        assert InvalidStructure("x").retryable is False
        assert LoadFailed("x").retryable is True
        assert ValidationTimeout("x").retryable is True

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("CUDA error: out of memory", "GPU memory insufficient"),
            ("GPU driver version too old", "GPU driver issue"),
            ("failed to load model", "Model loading failed"),
            ("OpenVINO processing failed: device lost", "Intel GPU processing failed"),
            ("CUDA kernel launch failed", "NVIDIA GPU processing failed"),
            ("addon crashed", "Backend module loading failed"),
            ("segfault", "Processing failed: segfault"),
        ],
    )
    def test_user_friendly_message(self, message, expected):
        assert user_friendly_message(RuntimeError(message)).startswith(expected)
