"""Backend selection.

Given a capability snapshot, a vendor priority list and the requested
model, pick exactly one backend descriptor. Selection is pure apart from
the trace events it emits, and it never fails: the CPU descriptor is
always the last resort.

Vendor probes apply, in order:
1. hardware present
2. vendor runtime present
3. model supported (quantized names resolve to their base model)
4. a device suitable for the model's memory needs
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .capabilities import CapabilityModel, GPUDevice
from .descriptor import (
    BackendDescriptor,
    coreml_descriptor,
    cpu_descriptor,
    cuda_descriptor,
    openvino_descriptor,
    performance_profile,
)
from .events import EventCategory, EventEmitter, new_correlation_id
from .models import (
    LARGE_MODEL_MEMORY_MB,
    ModelStore,
    fits_shared_memory,
    is_supported_model,
    model_memory_requirement,
)
from .platforms import DARWIN, LINUX, WIN32, X64, PlatformInfo

logger = logging.getLogger(__name__)

NVIDIA = "nvidia"
INTEL = "intel"
APPLE = "apple"
CPU = "cpu"

KNOWN_VENDORS = (NVIDIA, INTEL, APPLE, CPU)
DEFAULT_PRIORITY = [NVIDIA, INTEL, APPLE, CPU]

_TIER_ORDER = {"high": 0, "medium": 1, "low": 2}


def validate_device_memory(
    device: GPUDevice,
    model: str,
    large_model_mb: int = LARGE_MODEL_MEMORY_MB,
) -> bool:
    """Whether a device has enough memory for the model.

    Shared-memory (integrated) devices are trusted up to the medium tier.
    """
    if device.shared_memory:
        return fits_shared_memory(model)
    return device.memory_mb >= model_memory_requirement(model, large_model_mb)


def select_best_device(
    devices: Sequence[GPUDevice],
    model: str,
    large_model_mb: int = LARGE_MODEL_MEMORY_MB,
) -> Optional[GPUDevice]:
    """Pick the best device with enough memory: discrete first, then by performance tier."""
    suitable = [d for d in devices if validate_device_memory(d, model, large_model_mb)]
    if not suitable:
        logger.warning(
            "No device has sufficient memory for model %s (needs %d MB): %s",
            model,
            model_memory_requirement(model, large_model_mb),
            [(d.display_name, d.memory_mb, d.form_factor) for d in devices],
        )
        return None

    # sorted() is stable, so equal devices keep snapshot order.
    ranked = sorted(
        suitable,
        key=lambda d: (0 if d.form_factor == "discrete" else 1, _TIER_ORDER[d.performance_tier]),
    )
    return ranked[0]


class _Probe:
    """Shared arguments for one selection pass."""

    def __init__(
        self,
        capabilities: CapabilityModel,
        model: str,
        platform: PlatformInfo,
        model_store: Optional[ModelStore],
        emitter: EventEmitter,
        correlation_id: str,
        large_model_mb: int,
    ):
        self.capabilities = capabilities
        self.model = model
        self.platform = platform
        self.model_store = model_store
        self.emitter = emitter
        self.correlation_id = correlation_id
        self.large_model_mb = large_model_mb

    def found(self, gpu_type: str, available: bool, **context: Any) -> None:
        self.emitter.detection(
            "gpu_found",
            {"gpu_type": gpu_type, "available": available, **context},
            self.correlation_id,
            platform=self.platform.system,
        )

    def rejected(self, gpu_type: str, reason: str, **context: Any) -> None:
        self.emitter.detection(
            "gpu_validated",
            {"gpu_type": gpu_type, "validated": False, "reason": reason, **context},
            self.correlation_id,
            platform=self.platform.system,
        )

    def nvidia(self) -> Optional[BackendDescriptor]:
        if not self.capabilities.nvidia:
            self.found(NVIDIA, False, reason="NVIDIA GPU not detected")
            return None
        if not is_supported_model(self.model):
            self.rejected(NVIDIA, f"Model {self.model} not supported on CUDA")
            return None
        self.found(NVIDIA, True, model=self.model, validated=True)
        return cuda_descriptor(self.platform)

    def intel(self) -> Optional[BackendDescriptor]:
        caps = self.capabilities
        if not caps.intel:
            self.found(INTEL, False, reason="No Intel GPU detected")
            return None
        if not caps.openvino_version:
            self.rejected(INTEL, "OpenVINO toolkit not available", intel_gpu_count=len(caps.intel))
            return None
        if not is_supported_model(self.model):
            self.rejected(INTEL, f"Model {self.model} not supported on OpenVINO")
            return None

        # The OpenVINO GPU plugin needs a working OpenCL driver on the device.
        gpu_plugin_devices = [d for d in caps.intel if d.opencl_ok]
        if not gpu_plugin_devices:
            if caps.nvidia:
                self.found(INTEL, True, device="CPU", reason="OpenVINO GPU plugin unavailable")
                return openvino_descriptor(
                    self.platform,
                    "Intel OpenVINO (CPU device)",
                    fallback_reason="OpenVINO GPU plugin unavailable, using the OpenVINO CPU device",
                )
            self.rejected(INTEL, "OpenVINO GPU plugin unavailable (no OpenCL driver)")
            return None

        best = select_best_device(gpu_plugin_devices, self.model, self.large_model_mb)
        if best is None:
            self.rejected(
                INTEL,
                "No suitable Intel GPU found for model requirements",
                model=self.model,
                required_memory_mb=model_memory_requirement(self.model, self.large_model_mb),
            )
            return None

        self.found(
            INTEL,
            True,
            selected_gpu={
                "name": best.display_name,
                "device_id": best.device_id,
                "memory": best.memory_mb,
                "form_factor": best.form_factor,
            },
            model=self.model,
            openvino_version=caps.openvino_version,
        )
        return openvino_descriptor(self.platform, f"Intel {best.display_name}", best)

    def apple(self) -> Optional[BackendDescriptor]:
        if not self.capabilities.apple:
            self.found(APPLE, False, reason="Apple CoreML not available")
            return None
        if not self.platform.is_apple_silicon:
            self.rejected(APPLE, "Not running on Apple Silicon", platform=str(self.platform))
            return None
        if self.model_store is not None and not self.model_store.has_encoder_model(self.model):
            self.rejected(APPLE, f"CoreML encoder model not available for {self.model}")
            return None
        if not is_supported_model(self.model):
            self.rejected(APPLE, f"Model {self.model} not supported on CoreML")
            return None
        self.found(APPLE, True, model=self.model, validated=True)
        return coreml_descriptor(self.platform)


def try_vendor(
    vendor: str,
    capabilities: CapabilityModel,
    model: str,
    *,
    platform: Optional[PlatformInfo] = None,
    model_store: Optional[ModelStore] = None,
    emitter: Optional[EventEmitter] = None,
    correlation_id: Optional[str] = None,
    large_model_mb: int = LARGE_MODEL_MEMORY_MB,
) -> Optional[BackendDescriptor]:
    """Probe a single vendor; None when it cannot serve this model here.

    When ``model_store`` is None the CoreML encoder-model check is skipped.
    """
    probe = _Probe(
        capabilities,
        model,
        platform or PlatformInfo.current(),
        model_store,
        emitter or EventEmitter(),
        correlation_id or new_correlation_id(),
        large_model_mb,
    )
    if vendor == NVIDIA:
        return probe.nvidia()
    if vendor == INTEL:
        return probe.intel()
    if vendor == APPLE:
        return probe.apple()
    if vendor == CPU:
        return cpu_descriptor(probe.platform)

    logger.warning("Unknown GPU type %r (known: %s)", vendor, ", ".join(KNOWN_VENDORS))
    return None


def enhanced_platform_fallback(
    capabilities: CapabilityModel,
    platform: PlatformInfo,
) -> Optional[BackendDescriptor]:
    """Last accelerated option once the priority list is exhausted.

    On x64 Windows, Linux and Intel macOS the OpenVINO runtime can still run
    on the CPU device, which beats the plain CPU build. Apple Silicon and
    unknown platforms have no such option.
    """
    if not capabilities.openvino_version:
        return None
    if platform.arch != X64:
        return None
    if platform.system not in (WIN32, LINUX, DARWIN):
        return None
    return openvino_descriptor(
        platform,
        "Intel OpenVINO (CPU device)",
        fallback_reason="No preferred GPU available, using the OpenVINO CPU device",
    )


def select_optimal_gpu(
    priority: Iterable[str],
    capabilities: CapabilityModel,
    model: str,
    *,
    platform: Optional[PlatformInfo] = None,
    model_store: Optional[ModelStore] = None,
    emitter: Optional[EventEmitter] = None,
    correlation_id: Optional[str] = None,
    large_model_mb: int = LARGE_MODEL_MEMORY_MB,
) -> BackendDescriptor:
    """Pick the first vendor in ``priority`` that can serve ``model``.

    Never raises for a well-formed snapshot; returns the CPU descriptor when
    nothing else fits.
    """
    platform = platform or PlatformInfo.current()
    emitter = emitter or EventEmitter()
    cid = correlation_id or new_correlation_id()
    priority = list(priority)

    emitter.detection(
        "detection_started",
        {"priority": priority, "model": model, "system_capabilities": capabilities.summary()},
        cid,
        platform=platform.system,
    )

    for vendor in priority:
        descriptor = try_vendor(
            vendor,
            capabilities,
            model,
            platform=platform,
            model_store=model_store,
            emitter=emitter,
            correlation_id=cid,
            large_model_mb=large_model_mb,
        )
        if descriptor is None:
            continue

        emitter.detection(
            "gpu_validated",
            {
                "selected": descriptor.to_dict(),
                "priority": vendor,
                "model": model,
            },
            cid,
            platform=platform.system,
        )
        emitter.detection(
            "detection_completed",
            {
                "final_selection": descriptor.to_dict(),
                "total_priority_options": len(priority),
                "successful_selection": True,
            },
            cid,
            platform=platform.system,
        )
        return descriptor

    descriptor = enhanced_platform_fallback(capabilities, platform)
    if descriptor is None:
        descriptor = cpu_descriptor(
            platform,
            "CPU Processing (Emergency Fallback)",
            fallback_reason="All GPU acceleration methods unavailable",
        )

    emitter.detection(
        "detection_completed",
        {
            "final_selection": descriptor.to_dict(),
            "total_priority_options": len(priority),
            "successful_selection": False,
            "emergency_fallback": True,
        },
        cid,
        platform=platform.system,
    )
    return descriptor


def resolve_specific_gpu(
    gpu_id: str,
    capabilities: CapabilityModel,
    *,
    platform: Optional[PlatformInfo] = None,
    emitter: Optional[EventEmitter] = None,
    correlation_id: Optional[str] = None,
) -> Optional[BackendDescriptor]:
    """Resolve a user-selected backend id directly, bypassing priority selection.

    Returns None for "auto" and for ids that are unknown or unavailable, in
    which case the caller proceeds with automatic selection.
    """
    platform = platform or PlatformInfo.current()
    emitter = emitter or EventEmitter()
    cid = correlation_id or new_correlation_id()

    logger.info("User-requested specific GPU resolution: %s", gpu_id)

    if not gpu_id or gpu_id == "auto":
        return None

    if NVIDIA in gpu_id and capabilities.nvidia:
        return cuda_descriptor(platform, "NVIDIA CUDA GPU (User Selected)")

    if INTEL in gpu_id and capabilities.openvino_version:
        for device in capabilities.all_intel_devices():
            if device.id == gpu_id:
                return openvino_descriptor(platform, f"Intel {device.display_name} (User Selected)", device)

    if APPLE in gpu_id and capabilities.apple:
        return coreml_descriptor(platform, "Apple CoreML (User Selected)")

    if CPU in gpu_id:
        return cpu_descriptor(platform, "CPU Processing (User Selected)")

    emitter.detection(
        "detection_failed",
        {
            "requested_gpu_id": gpu_id,
            "reason": "GPU ID not found or not available",
            "system_capabilities": capabilities.summary(),
        },
        cid,
        platform=platform.system,
    )
    return None


def log_selection(
    descriptor: BackendDescriptor,
    capabilities: CapabilityModel,
    user_settings: Optional[Dict[str, Any]] = None,
    *,
    emitter: Optional[EventEmitter] = None,
    correlation_id: Optional[str] = None,
) -> None:
    """Record the final selection decision together with the inputs that led to it."""
    (emitter or EventEmitter()).emit(
        "selection_decision",
        "Final GPU selection decision logged",
        category=EventCategory.GPU_DETECTION,
        context={
            "selected": descriptor.to_dict(),
            "performance": performance_profile(descriptor),
            "system_capabilities": capabilities.summary(),
            "user_settings": user_settings or {},
        },
        correlation_id=correlation_id,
    )


def priority_with_known_vendors(priority: Optional[List[str]]) -> List[str]:
    """Settings may store an empty list; fall back to the default order then."""
    if not priority:
        return list(DEFAULT_PRIORITY)
    return list(priority)
