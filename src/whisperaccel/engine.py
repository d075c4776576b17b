"""Top-level entry point: select a backend, load it, recover when it fails.

    engine = BackendEngine(config, probe=my_probe)
    whisper = engine.select_and_load("base")
    whisper({"model": "...", "fname_inp": "audio.wav"}, callback)

The flow for one call, all under one correlation id:

    probe -> user override or priority selection -> load + validate
          -> on load error: fallback chain walk
          -> on any failure: legacy loader

Only ``LegacyFallbackFailed`` reaches the caller.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import yaml

from .capabilities import CapabilityModel
from .descriptor import BackendDescriptor
from .errors import CapabilityProbeFailed, LoadError
from .events import EventEmitter, new_correlation_id
from .fallback import build_fallback_chain
from .legacy import load_legacy_backend
from .loader import BackendAdapter, BackendLoader
from .models import ModelStore
from .platforms import PlatformInfo
from .recovery import (
    NotifyFn,
    ProcessFn,
    RecoveryContext,
    RecoveryOutcome,
    StrategyRegistry,
    TranscriptionJob,
    handle_processing_error,
    recover_with_fallbacks,
)
from .selection import (
    log_selection,
    priority_with_known_vendors,
    resolve_specific_gpu,
    select_optimal_gpu,
)
from .settings import EngineConfig, PreferenceStore, UserPreference

logger = logging.getLogger(__name__)

CapabilityProbe = Callable[[], CapabilityModel]


class BackendEngine:
    """Owns the loader, the preference store and the currently loaded backend.

    Loads are serialized per engine: the OpenVINO environment variables set
    around a load are process-wide, so two loads must not overlap.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        probe: Optional[CapabilityProbe] = None,
        preferences: Optional[PreferenceStore] = None,
        emitter: Optional[EventEmitter] = None,
        platform: Optional[PlatformInfo] = None,
        model_store: Optional[ModelStore] = None,
        loader: Optional[BackendLoader] = None,
        cuda_check: Optional[Callable[[PlatformInfo], bool]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.probe = probe
        self.preferences = preferences or PreferenceStore()
        self.emitter = emitter or EventEmitter()
        self.platform = platform or PlatformInfo.current()
        self.model_store = model_store if model_store is not None else ModelStore(self.config.models_path)
        self.loader = loader or BackendLoader(self.config, self.emitter)
        self.cuda_check = cuda_check
        self._lock = threading.RLock()
        self._current: Optional[BackendAdapter] = None

    @property
    def current(self) -> Optional[BackendAdapter]:
        return self._current

    def probe_capabilities(self) -> CapabilityModel:
        if self.probe is None:
            raise CapabilityProbeFailed("No capability probe configured")
        try:
            return self.probe()
        except Exception as exc:
            raise CapabilityProbeFailed(f"Capability probe failed: {exc}") from exc

    def _read_preference(self) -> UserPreference:
        try:
            return self.preferences.read()
        except (OSError, ValueError, yaml.YAMLError) as exc:
            logger.warning("Could not read backend preference, using defaults: %s", exc)
            return UserPreference()

    def select(
        self,
        model_name: str,
        capabilities: CapabilityModel,
        correlation_id: Optional[str] = None,
    ) -> BackendDescriptor:
        """User override first, then priority-based selection. Never raises."""
        preference = self._read_preference()
        descriptor: Optional[BackendDescriptor] = None

        if preference.selected_backend_id and preference.selected_backend_id != "auto":
            descriptor = resolve_specific_gpu(
                preference.selected_backend_id,
                capabilities,
                platform=self.platform,
                emitter=self.emitter,
                correlation_id=correlation_id,
            )
            if descriptor is not None:
                logger.info("Using user-selected backend: %s", descriptor.display_name)
            else:
                logger.warning(
                    "User-selected backend %s not available, falling back to auto-detection",
                    preference.selected_backend_id,
                )

        if descriptor is None:
            descriptor = select_optimal_gpu(
                priority_with_known_vendors(preference.priority_order),
                capabilities,
                model_name,
                platform=self.platform,
                model_store=self.model_store,
                emitter=self.emitter,
                correlation_id=correlation_id,
                large_model_mb=self.config.large_model_mb,
            )

        log_selection(
            descriptor,
            capabilities,
            preference.to_settings(),
            emitter=self.emitter,
            correlation_id=correlation_id,
        )
        return descriptor

    def _select_and_load(
        self,
        model_name: str,
        capabilities: Optional[CapabilityModel],
        correlation_id: str,
    ) -> BackendAdapter:
        if capabilities is None:
            capabilities = self.probe_capabilities()
            logger.info("Capabilities detected: %s", capabilities.summary())

        descriptor = self.select(model_name, capabilities, correlation_id)
        try:
            return self.loader.load_and_validate(descriptor, correlation_id)
        except LoadError as exc:
            logger.warning("Failed to load %s backend: %s", descriptor.kind.value, exc)
            chain = build_fallback_chain(descriptor, self.platform)
            return recover_with_fallbacks(exc, descriptor, chain, self.loader, correlation_id=correlation_id)

    def select_and_load(
        self,
        model_name: str,
        capabilities: Optional[CapabilityModel] = None,
    ) -> BackendAdapter:
        """Return a loaded and validated inference callable for ``model_name``.

        Raises LegacyFallbackFailed when even the legacy loader finds nothing
        to load.
        """
        cid = new_correlation_id()
        with self._lock:
            logger.info("Starting backend loading for model %s", model_name)
            try:
                adapter = self._select_and_load(model_name, capabilities, cid)
            except Exception as exc:
                logger.error("Backend selection and loading failed: %s", exc)
                adapter = load_legacy_backend(
                    model_name,
                    loader=self.loader,
                    platform=self.platform,
                    use_cuda=self._read_preference().use_cuda,
                    model_store=self.model_store,
                    cuda_check=self.cuda_check,
                    correlation_id=cid,
                )
            self._current = adapter
            return adapter

    def reload(self, model_name: str) -> BackendAdapter:
        """Discard the current backend handle and run the whole load flow again."""
        with self._lock:
            if self._current is not None:
                logger.info("Discarding backend handle %r", self._current)
            self._current = None
            return self.select_and_load(model_name)

    def recovery_context(
        self,
        error: BaseException,
        job: TranscriptionJob,
        process: ProcessFn,
        notify_ui: Optional[NotifyFn] = None,
        retry_count: int = 0,
    ) -> RecoveryContext:
        """A RecoveryContext wired to this engine's preferences, models and reload."""
        extra: Dict[str, Any] = {}
        if notify_ui is not None:
            extra["notify_ui"] = notify_ui
        return RecoveryContext(
            error=error,
            job=job,
            process=process,
            retry_count=retry_count,
            max_retries=self.config.max_retries,
            preferences=self.preferences,
            model_store=self.model_store,
            reload_backend=self.reload,
            emitter=self.emitter,
            correlation_id=new_correlation_id(),
            base_delay_s=self.config.base_delay_s,
            **extra,
        )

    def recover(
        self,
        error: BaseException,
        job: TranscriptionJob,
        process: ProcessFn,
        notify_ui: Optional[NotifyFn] = None,
        registry: Optional[StrategyRegistry] = None,
    ) -> RecoveryOutcome:
        """Run strategy-based recovery for a job that failed during processing."""
        return handle_processing_error(self.recovery_context(error, job, process, notify_ui), registry)
