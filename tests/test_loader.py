"""Tests for backend module loading and validation."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from whisperaccel.capabilities import GPUDevice
from whisperaccel.descriptor import (
    BackendDescriptor,
    BackendKind,
    coreml_descriptor,
    cpu_descriptor,
    openvino_descriptor,
)
from whisperaccel.errors import (
    InvalidStructure,
    LoadFailed,
    ModuleNotFound,
    ValidationFailed,
    ValidationTimeout,
    WhisperAccelError,
)
from whisperaccel.events import EventEmitter, MemoryEventSink
from whisperaccel.loader import BackendLoader, OpenVINOConfig, scoped_environment
from whisperaccel.platforms import PlatformInfo
from whisperaccel.settings import EngineConfig

LINUX = PlatformInfo.of("linux", "x64")

OK_MODULE = """
def whisper(params, callback):
    callback(None, {"params": params})
"""

MODEL_MISSING_MODULE = """
def whisper(params, callback):
    if params.get("validate_only"):
        callback(RuntimeError("failed to open model file ''"), None)
        return
    callback(None, {"params": params})
"""

BROKEN_MODULE = """
def whisper(params, callback):
    callback(RuntimeError("illegal instruction in kernel"), None)
"""

RAISING_MODULE = """
def whisper(params, callback):
    raise RuntimeError("no compatible device")
"""

HANGING_MODULE = """
import threading
import time

LATE = []

def whisper(params, callback):
    def later():
        time.sleep(0.5)
        LATE.append(True)
        callback(None, {"late": True})
    threading.Thread(target=later, daemon=True).start()
"""

DOUBLE_CALLBACK_MODULE = """
def whisper(params, callback):
    callback(None, {"ok": True})
    callback(RuntimeError("illegal second completion"), None)
"""

IMPORT_ERROR_MODULE = """
raise ImportError("libcudart.so.12: cannot open shared object file")
"""

NO_ENTRY_MODULE = """
VERSION = "1.0"
"""

OPENVINO_MODULE = """
import os

SEEN_AT_IMPORT = os.environ.get("OPENVINO_DEVICE_ID")

def whisper(params, callback):
    if params.get("validate_only"):
        callback(None, {"device": params.get("openvino_device")})
        return
    if params.get("fail"):
        callback(RuntimeError("device lost"), None)
        return
    callback(None, {"params": params, "seen": SEEN_AT_IMPORT})
"""


def _write(addons: Path, stem: str, body: str) -> Path:
    addons.mkdir(parents=True, exist_ok=True)
    path = addons / f"{stem}.py"
    path.write_text(body, encoding="utf-8")
    return path


def _loader(addons: Path, sink: MemoryEventSink | None = None, **config) -> BackendLoader:
    return BackendLoader(EngineConfig(addons_dir=addons, **config), EventEmitter(sink))


def _arc() -> GPUDevice:
    return GPUDevice(
        id="intel_arc_a770_0",
        display_name="Arc A770",
        device_id="GPU.1",
        memory_mb=16384,
        form_factor="discrete",
        performance_tier="high",
    )


class _Result:
    def __init__(self):
        self.error = None
        self.value = None

    def __call__(self, error, value=None):
        self.error = error
        self.value = value


class TestResolveModulePath:
    """Tests for locating backend artifacts."""

    def test_missing_artifact(self, tmp_path: Path):
        loader = _loader(tmp_path)
        with pytest.raises(ModuleNotFound) as exc_info:
            loader.resolve_module_path("addon_linux_cuda")
        assert exc_info.value.retryable is False

    def test_empty_artifact_is_rejected(self, tmp_path: Path):
        (tmp_path / "addon_linux_cpu.py").write_text("", encoding="utf-8")
        with pytest.raises(ModuleNotFound, match="empty"):
            _loader(tmp_path).resolve_module_path("addon_linux_cpu")

    def test_python_artifact_found(self, tmp_path: Path):
        path = _write(tmp_path, "addon_linux_cpu", OK_MODULE)
        assert _loader(tmp_path).resolve_module_path("addon_linux_cpu") == path


class TestLoadAndValidate:
    """Tests for the load gates and their error types."""

    def test_cpu_backend_loads(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", OK_MODULE)
        sink = MemoryEventSink()
        adapter = _loader(tmp_path, sink).load_and_validate(cpu_descriptor(LINUX), "op_1")

        assert adapter.kind is BackendKind.CPU
        assert adapter.injected == {"use_gpu": False}
        assert sink.names("op_1") == ["load_attempt", "load_success", "performance_metrics"]

    def test_import_error_becomes_load_failed(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", IMPORT_ERROR_MODULE)
        descriptor = cpu_descriptor(LINUX)
        with pytest.raises(LoadFailed, match="libcudart") as exc_info:
            _loader(tmp_path).load_and_validate(descriptor)
        assert exc_info.value.descriptor == descriptor
        assert isinstance(exc_info.value.__cause__, ImportError)

    def test_missing_entry_point(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", NO_ENTRY_MODULE)
        with pytest.raises(InvalidStructure):
            _loader(tmp_path).load_and_validate(cpu_descriptor(LINUX))

    def test_model_or_file_errors_during_validation_are_expected(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", MODEL_MISSING_MODULE)
        adapter = _loader(tmp_path).load_and_validate(cpu_descriptor(LINUX))
        assert adapter.kind is BackendKind.CPU

    def test_real_validation_error(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", BROKEN_MODULE)
        sink = MemoryEventSink()
        with pytest.raises(ValidationFailed, match="illegal instruction"):
            _loader(tmp_path, sink).load_and_validate(cpu_descriptor(LINUX))
        assert sink.names()[-1] == "load_failed"

    def test_entry_point_raising_synchronously_fails_validation(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", RAISING_MODULE)
        with pytest.raises(ValidationFailed, match="no compatible device"):
            _loader(tmp_path).load_and_validate(cpu_descriptor(LINUX))

    def test_coreml_skips_functional_validation(self, tmp_path: Path):
        mac = PlatformInfo.of("darwin", "arm64")
        _write(tmp_path, "addon_macos_arm64_coreml", BROKEN_MODULE)
        adapter = _loader(tmp_path).load_and_validate(coreml_descriptor(mac))
        assert adapter.kind is BackendKind.COREML


class TestValidationTimeout:
    """The validation call races a timer; the first to finish wins."""

    def test_hanging_module_times_out_within_budget(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", HANGING_MODULE)
        loader = _loader(tmp_path, validation_timeout_s=0.1)

        started = time.monotonic()
        with pytest.raises(ValidationTimeout):
            loader.load_and_validate(cpu_descriptor(LINUX))
        assert time.monotonic() - started < 0.45

    def test_late_callback_is_ignored(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", HANGING_MODULE)
        loader = _loader(tmp_path, validation_timeout_s=0.1)
        with pytest.raises(ValidationTimeout):
            loader.load_and_validate(cpu_descriptor(LINUX))

        # Let the module's late completion fire; it must not raise anywhere.
        time.sleep(0.7)
        assert all(t.name != "validate-cpu" for t in threading.enumerate())

    def test_second_callback_is_ignored(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_cpu", DOUBLE_CALLBACK_MODULE)
        adapter = _loader(tmp_path).load_and_validate(cpu_descriptor(LINUX))
        assert adapter.kind is BackendKind.CPU

    def test_openvino_gets_longer_budget(self, tmp_path: Path):
        loader = _loader(tmp_path)
        assert loader.timeout_for(cpu_descriptor(LINUX)) == 5.0
        assert loader.timeout_for(openvino_descriptor(LINUX, "Intel Arc", _arc())) == 10.0


class TestOpenVINO:
    """Tests for OpenVINO-specific configuration and the adapter."""

    def test_config_from_discrete_device(self, tmp_path: Path):
        cfg = OpenVINOConfig.for_descriptor(
            openvino_descriptor(LINUX, "Intel Arc", _arc()),
            EngineConfig(openvino_cache_dir=tmp_path / "ov-cache"),
        )
        assert cfg.device_id == "GPU.1"
        assert cfg.performance_hint == "THROUGHPUT"
        assert cfg.cache_dir == str(tmp_path / "ov-cache")

    def test_config_without_device_uses_cpu_and_latency(self):
        cfg = OpenVINOConfig.for_descriptor(openvino_descriptor(LINUX, "Intel OpenVINO (CPU device)"), EngineConfig())
        assert cfg.device_id == "CPU"
        assert cfg.performance_hint == "LATENCY"

    def test_environment_is_set_during_load_and_restored(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("OPENVINO_DEVICE_ID", raising=False)
        monkeypatch.setenv("OPENVINO_PERFORMANCE_HINT", "CUMULATIVE_THROUGHPUT")
        _write(tmp_path, "addon_linux_openvino", OPENVINO_MODULE)

        adapter = _loader(tmp_path).load_and_validate(openvino_descriptor(LINUX, "Intel Arc", _arc()))
        result = _Result()
        adapter({"model": "ggml-base.bin"}, result)

        assert result.error is None
        assert result.value["seen"] == "GPU.1"
        assert "OPENVINO_DEVICE_ID" not in os.environ
        assert os.environ["OPENVINO_PERFORMANCE_HINT"] == "CUMULATIVE_THROUGHPUT"

    def test_adapter_injects_backend_params(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_openvino", OPENVINO_MODULE)
        adapter = _loader(tmp_path).load_and_validate(openvino_descriptor(LINUX, "Intel Arc", _arc()))

        result = _Result()
        adapter({"model": "ggml-base.bin", "openvino_device": "GPU.9"}, result)
        params = result.value["params"]

        assert params["model"] == "ggml-base.bin"
        assert params["use_gpu"] is True
        assert params["openvino_device"] == "GPU.1"
        assert params["openvino_performance_hint"] == "THROUGHPUT"
        assert params["openvino_enable_optimization"] is True

    def test_adapter_rewraps_processing_errors(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_openvino", OPENVINO_MODULE)
        adapter = _loader(tmp_path).load_and_validate(openvino_descriptor(LINUX, "Intel Arc", _arc()))

        result = _Result()
        adapter({"model": "ggml-base.bin", "fail": True}, result)
        assert isinstance(result.error, WhisperAccelError)
        assert str(result.error) == "OpenVINO processing failed: device lost"

    def test_openvino_events(self, tmp_path: Path):
        _write(tmp_path, "addon_linux_openvino", OPENVINO_MODULE)
        sink = MemoryEventSink()
        _loader(tmp_path, sink).load_and_validate(openvino_descriptor(LINUX, "Intel Arc", _arc()), "op_ov")
        assert sink.names("op_ov") == [
            "load_attempt",
            "openvino_loading_initiated",
            "openvino_validation_started",
            "openvino_validation_passed",
            "load_success",
            "openvino_loading_success",
            "performance_metrics",
        ]


def test_scoped_environment_restores_on_error(monkeypatch):
    monkeypatch.setenv("OPENVINO_CACHE_DIR", "/original")
    monkeypatch.delenv("OPENVINO_DEVICE_ID", raising=False)

    with pytest.raises(RuntimeError):
        with scoped_environment({"OPENVINO_CACHE_DIR": "/tmp/x", "OPENVINO_DEVICE_ID": "GPU.0"}):
            assert os.environ["OPENVINO_DEVICE_ID"] == "GPU.0"
            raise RuntimeError("boom")

    assert os.environ["OPENVINO_CACHE_DIR"] == "/original"
    assert "OPENVINO_DEVICE_ID" not in os.environ


def test_reload_produces_fresh_handle(tmp_path: Path):
    _write(tmp_path, "addon_linux_cpu", OK_MODULE)
    loader = _loader(tmp_path)
    first = loader.load_and_validate(cpu_descriptor(LINUX))
    second = loader.reload(first)

    assert second is not first
    assert second._entry is not first._entry
    assert second.descriptor == first.descriptor


def test_unknown_descriptor_module(tmp_path: Path):
    descriptor = BackendDescriptor(BackendKind.CUDA, "addon_linux_cuda", "NVIDIA CUDA GPU")
    with pytest.raises(ModuleNotFound) as exc_info:
        _loader(tmp_path).load_and_validate(descriptor)
    assert exc_info.value.descriptor is descriptor
