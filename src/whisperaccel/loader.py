"""Backend module loading and validation.

A backend module is a file in the addons directory named after the
descriptor's ``module_path`` stem: a native extension (any suffix from
``importlib.machinery.EXTENSION_SUFFIXES``) or a plain ``.py`` file. It must
expose one callable entry point, ``whisper(params, callback)``, where
``callback(error, result)`` follows the error-first completion contract.

Loading goes through four gates, each with its own error type:

    resolve artifact      -> ModuleNotFound
    import module         -> LoadFailed
    entry point present   -> InvalidStructure
    validation call       -> ValidationTimeout / ValidationFailed

The validation call runs on a daemon thread and races a timeout. Whichever
finishes first decides the outcome; a callback arriving after the timeout
(or a second callback) is dropped.
"""

from __future__ import annotations

import concurrent.futures
import importlib.machinery
import importlib.util
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, Iterator, Optional

from .descriptor import BackendDescriptor, BackendKind
from .errors import (
    InvalidStructure,
    LoadError,
    LoadFailed,
    ModuleNotFound,
    ValidationFailed,
    ValidationTimeout,
    WhisperAccelError,
)
from .events import EventEmitter
from .settings import EngineConfig

logger = logging.getLogger(__name__)

ENTRY_POINT = "whisper"

Callback = Callable[[Optional[BaseException], Any], None]
EntryPoint = Callable[[Dict[str, Any], Callback], Any]

# Errors mentioning these are expected from the synthetic validation call.
_EXPECTED_VALIDATION_ERRORS = ("model", "file")


@dataclass(frozen=True)
class OpenVINOConfig:
    device_id: str = "CPU"
    cache_dir: str = ""
    performance_hint: str = "LATENCY"
    enable_optimizations: bool = True

    @classmethod
    def for_descriptor(cls, descriptor: BackendDescriptor, config: EngineConfig) -> "OpenVINOConfig":
        device = descriptor.device_config
        hint = "THROUGHPUT" if device is not None and device.form_factor == "discrete" else "LATENCY"
        return cls(
            device_id=device.device_id if device is not None else "CPU",
            cache_dir=str(config.openvino_cache_dir),
            performance_hint=hint,
            enable_optimizations=config.openvino_enable_optimizations,
        )

    def environment(self) -> Dict[str, str]:
        return {
            "OPENVINO_DEVICE_ID": self.device_id,
            "OPENVINO_CACHE_DIR": self.cache_dir,
            "OPENVINO_PERFORMANCE_HINT": self.performance_hint,
            "OPENVINO_ENABLE_OPTIMIZATIONS": "true" if self.enable_optimizations else "false",
        }

    def params(self) -> Dict[str, Any]:
        return {
            "openvino_device": self.device_id,
            "openvino_cache_dir": self.cache_dir,
            "openvino_performance_hint": self.performance_hint,
            "openvino_enable_optimization": self.enable_optimizations,
        }


@contextmanager
def scoped_environment(env: Dict[str, str]) -> Iterator[None]:
    """Set process environment variables for the duration of the block.

    Previous values are restored (or removed) on exit, including when the
    block raises.
    """
    saved = {key: os.environ.get(key) for key in env}
    os.environ.update(env)
    try:
        yield
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


class BackendAdapter:
    """The inference callable returned to callers.

    Backend-specific parameters are captured by value at load time and merged
    into every call; they take precedence over caller-supplied keys.
    """

    def __init__(
        self,
        entry: EntryPoint,
        descriptor: BackendDescriptor,
        injected: Dict[str, Any],
        artifact: Path,
    ) -> None:
        self._entry = entry
        self.descriptor = descriptor
        self.injected = dict(injected)
        self.artifact = artifact

    @property
    def kind(self) -> BackendKind:
        return self.descriptor.kind

    @property
    def display_name(self) -> str:
        return self.descriptor.display_name

    def __call__(self, params: Dict[str, Any], callback: Callback) -> Any:
        call_params = {**params, **self.injected}

        if self.kind is not BackendKind.OPENVINO:
            return self._entry(call_params, callback)

        def on_done(error: Optional[BaseException], result: Any = None) -> None:
            if error is not None:
                logger.error("OpenVINO processing error: %s", error)
                wrapped = WhisperAccelError(f"OpenVINO processing failed: {error}")
                wrapped.__cause__ = error if isinstance(error, BaseException) else None
                callback(wrapped, None)
                return
            callback(None, result)

        try:
            return self._entry(call_params, on_done)
        except Exception as exc:
            logger.error("OpenVINO initialization error: %s", exc)
            wrapped = WhisperAccelError(f"OpenVINO initialization failed: {exc}")
            wrapped.__cause__ = exc
            callback(wrapped, None)
            return None

    def __repr__(self) -> str:
        return f"BackendAdapter({self.kind.value}, {self.artifact.name})"


def injected_params(descriptor: BackendDescriptor, config: EngineConfig) -> Dict[str, Any]:
    params: Dict[str, Any] = {"use_gpu": descriptor.kind is not BackendKind.CPU}
    if descriptor.kind is BackendKind.OPENVINO:
        params.update(OpenVINOConfig.for_descriptor(descriptor, config).params())
    return params


def _settle(future: "concurrent.futures.Future[Any]", error: Optional[BaseException], result: Any) -> None:
    if future.done():
        logger.debug("Ignoring late validation callback")
        return
    try:
        if error is None:
            future.set_result(result)
        elif isinstance(error, BaseException):
            future.set_exception(error)
        else:
            future.set_exception(RuntimeError(str(error)))
    except concurrent.futures.InvalidStateError:
        logger.debug("Ignoring late validation callback")


class BackendLoader:
    """Resolves, imports and validates backend modules."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.emitter = emitter or EventEmitter()

    def resolve_module_path(self, stem: str, descriptor: Optional[BackendDescriptor] = None) -> Path:
        addons_dir = Path(self.config.addons_dir)
        suffixes = list(importlib.machinery.EXTENSION_SUFFIXES) + [".py"]
        for suffix in suffixes:
            candidate = addons_dir / f"{stem}{suffix}"
            if not candidate.exists():
                continue
            if not candidate.is_file() or candidate.stat().st_size == 0:
                raise ModuleNotFound(f"Backend module artifact is empty or invalid: {candidate}", descriptor)
            return candidate
        raise ModuleNotFound(f"Backend module not found: {stem} in {addons_dir}", descriptor)

    def import_module(self, path: Path, descriptor: Optional[BackendDescriptor] = None) -> ModuleType:
        """Execute the artifact into a fresh module object (not registered in sys.modules)."""
        name = path.name.split(".", 1)[0]
        try:
            spec = importlib.util.spec_from_file_location(name, path)
            if spec is None or spec.loader is None:
                raise ImportError(f"no loader for {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as exc:
            raise LoadFailed(f"Failed to load backend module {path.name}: {exc}", descriptor) from exc
        return module

    def entry_point(self, module: ModuleType, descriptor: Optional[BackendDescriptor] = None) -> EntryPoint:
        entry = getattr(module, ENTRY_POINT, None)
        if entry is None or not callable(entry):
            raise InvalidStructure(
                f"Backend module {module.__name__} does not expose a callable '{ENTRY_POINT}' function",
                descriptor,
            )
        return entry

    def timeout_for(self, descriptor: BackendDescriptor) -> float:
        if descriptor.kind is BackendKind.OPENVINO:
            return self.config.openvino_validation_timeout_s
        return self.config.validation_timeout_s

    def validate(
        self,
        entry: EntryPoint,
        descriptor: BackendDescriptor,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Run the synthetic validation call under the descriptor's timeout."""
        if descriptor.kind is BackendKind.COREML:
            logger.debug("Skipping functional validation for CoreML backend")
            return

        payload: Dict[str, Any] = {"model": "", "validate_only": True}
        if descriptor.kind is BackendKind.OPENVINO:
            payload["openvino_device"] = OpenVINOConfig.for_descriptor(descriptor, self.config).device_id
            self.emitter.openvino("validation_started", {"module_path": descriptor.module_path}, correlation_id)

        timeout = self.timeout_for(descriptor)
        future: "concurrent.futures.Future[Any]" = concurrent.futures.Future()

        def run() -> None:
            try:
                entry(payload, lambda error, result=None: _settle(future, error, result))
            except Exception as exc:
                _settle(future, exc, None)

        thread = threading.Thread(target=run, name=f"validate-{descriptor.kind.value}", daemon=True)
        thread.start()

        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            if descriptor.kind is BackendKind.OPENVINO:
                self.emitter.openvino("validation_failed", {"reason": "timeout", "timeout_s": timeout}, correlation_id)
            raise ValidationTimeout(
                f"{descriptor.kind.value} backend validation timed out after {timeout:g}s",
                descriptor,
            ) from None
        except Exception as exc:
            message = str(exc)
            if any(marker in message.lower() for marker in _EXPECTED_VALIDATION_ERRORS):
                logger.debug("Validation call reported expected error: %s", message)
            else:
                if descriptor.kind is BackendKind.OPENVINO:
                    self.emitter.openvino("validation_failed", {"error": message}, correlation_id)
                raise ValidationFailed(
                    f"{descriptor.kind.value} backend validation failed: {message}",
                    descriptor,
                ) from exc

        if descriptor.kind is BackendKind.OPENVINO:
            self.emitter.openvino("validation_passed", {"module_path": descriptor.module_path}, correlation_id)

    def load_and_validate(
        self,
        descriptor: BackendDescriptor,
        correlation_id: Optional[str] = None,
    ) -> BackendAdapter:
        kind = descriptor.kind.value
        context = {"module_path": descriptor.module_path, "display_name": descriptor.display_name}
        self.emitter.loading("load_attempt", kind, context, correlation_id)

        env: Dict[str, str] = {}
        if descriptor.kind is BackendKind.OPENVINO:
            ov = OpenVINOConfig.for_descriptor(descriptor, self.config)
            env = ov.environment()
            self.emitter.openvino("loading_initiated", {**context, "device_id": ov.device_id}, correlation_id)

        started = time.monotonic()
        try:
            path = self.resolve_module_path(descriptor.module_path, descriptor)
            with scoped_environment(env):
                module = self.import_module(path, descriptor)
                entry = self.entry_point(module, descriptor)
                self.validate(entry, descriptor, correlation_id)
        except LoadError as exc:
            self.emitter.loading(
                "load_failed",
                kind,
                {**context, "error": str(exc), "error_type": type(exc).__name__},
                correlation_id,
            )
            if descriptor.kind is BackendKind.OPENVINO:
                self.emitter.openvino("loading_failed", {**context, "error": str(exc)}, correlation_id)
            raise

        load_time_ms = int((time.monotonic() - started) * 1000)
        adapter = BackendAdapter(entry, descriptor, injected_params(descriptor, self.config), path)
        self.emitter.loading("load_success", kind, {**context, "artifact": str(path)}, correlation_id)
        if descriptor.kind is BackendKind.OPENVINO:
            self.emitter.openvino("loading_success", {**context, "load_time_ms": load_time_ms}, correlation_id)
        self.emitter.performance(
            f"{kind}_backend_load",
            {"load_time_ms": load_time_ms, "module_path": descriptor.module_path},
            correlation_id,
        )
        logger.info("Loaded %s from %s in %d ms", descriptor.display_name, path.name, load_time_ms)
        return adapter

    def reload(self, adapter: BackendAdapter, correlation_id: Optional[str] = None) -> BackendAdapter:
        """Load the adapter's backend again into a fresh handle; the old handle should be discarded."""
        logger.info("Reloading backend module %s", adapter.descriptor.module_path)
        return self.load_and_validate(adapter.descriptor, correlation_id)
