"""Hardware-accelerated backend selection and resilient loading for speech-to-text."""

from .capabilities import CapabilityCache, CapabilityModel, GPUDevice, Topology, capabilities_from_file
from .descriptor import BackendDescriptor, BackendKind, DeviceConfig
from .engine import BackendEngine
from .errors import (
    AllFallbacksExhausted,
    AllRecoveryStrategiesExhausted,
    CapabilityProbeFailed,
    InvalidStructure,
    LegacyFallbackFailed,
    LoadError,
    LoadFailed,
    ModuleNotFound,
    ValidationFailed,
    ValidationTimeout,
    WhisperAccelError,
)
from .events import EventEmitter, MemoryEventSink, TraceEvent
from .fallback import build_fallback_chain
from .loader import BackendAdapter, BackendLoader
from .platforms import PlatformInfo
from .selection import resolve_specific_gpu, select_optimal_gpu
from .settings import EngineConfig, PreferenceStore, UserPreference

__all__ = [
    "__version__",
    "AllFallbacksExhausted",
    "AllRecoveryStrategiesExhausted",
    "BackendAdapter",
    "BackendDescriptor",
    "BackendEngine",
    "BackendKind",
    "BackendLoader",
    "CapabilityCache",
    "CapabilityModel",
    "CapabilityProbeFailed",
    "DeviceConfig",
    "EngineConfig",
    "EventEmitter",
    "GPUDevice",
    "InvalidStructure",
    "LegacyFallbackFailed",
    "LoadError",
    "LoadFailed",
    "MemoryEventSink",
    "ModuleNotFound",
    "PlatformInfo",
    "PreferenceStore",
    "Topology",
    "TraceEvent",
    "UserPreference",
    "ValidationFailed",
    "ValidationTimeout",
    "WhisperAccelError",
    "build_fallback_chain",
    "capabilities_from_file",
    "resolve_specific_gpu",
    "select_optimal_gpu",
]
__version__ = "0.1.0"
