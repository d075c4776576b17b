"""Backend descriptors and platform-specific module artifact names."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .capabilities import GPUDevice, MemoryMB
from .platforms import ARM64, DARWIN, LINUX, WIN32, PlatformInfo


class BackendKind(str, Enum):
    CUDA = "cuda"
    OPENVINO = "openvino"
    COREML = "coreml"
    CPU = "cpu"


# Artifact stems used by the legacy loader.
LEGACY_MODULE = "addon"
LEGACY_NO_CUDA_MODULE = "addon_no_cuda"
LEGACY_COREML_MODULE = "addon_coreml"


def module_name(kind: BackendKind, platform: PlatformInfo) -> str:
    """Artifact stem of the backend module for a kind on a platform."""
    system, arch = platform.system, platform.arch

    if kind is BackendKind.CUDA:
        if system == WIN32:
            return "addon_windows_cuda"
        if system == LINUX:
            return "addon_linux_cuda"
        return "addon_cuda"

    if kind is BackendKind.OPENVINO:
        if system == WIN32:
            return "addon_windows_openvino"
        if system == LINUX:
            return "addon_linux_openvino"
        if system == DARWIN:
            return "addon_macos_arm_openvino" if arch == ARM64 else "addon_macos_x86_openvino"
        return "addon_openvino"

    if kind is BackendKind.COREML:
        if system == DARWIN:
            return "addon_macos_arm64_coreml" if arch == ARM64 else "addon_macos_coreml"
        return "addon_coreml"

    if system == WIN32:
        return "addon_windows_cpu"
    if system == LINUX:
        return "addon_linux_cpu"
    if system == DARWIN:
        return "addon_macos_arm64" if arch == ARM64 else "addon_macos_x64"
    return LEGACY_MODULE


@dataclass(frozen=True)
class DeviceConfig:
    device_id: str
    memory: MemoryMB
    form_factor: str
    driver_version: Optional[str] = None

    @classmethod
    def from_device(cls, device: GPUDevice) -> "DeviceConfig":
        return cls(
            device_id=device.device_id,
            memory=device.memory_mb,
            form_factor=device.form_factor,
            driver_version=device.driver_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "memory": self.memory,
            "form_factor": self.form_factor,
            "driver_version": self.driver_version,
        }


@dataclass(frozen=True)
class BackendDescriptor:
    """An immutable choice of backend.

    Created by selection or by the fallback chain builder, consumed once by
    the loader, and replaced (never mutated) by the next candidate.
    """
    kind: BackendKind
    module_path: str
    display_name: str
    device_config: Optional[DeviceConfig] = None
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "module_path": self.module_path,
            "display_name": self.display_name,
            "device_config": self.device_config.to_dict() if self.device_config else None,
            "fallback_reason": self.fallback_reason,
        }


def cpu_descriptor(
    platform: PlatformInfo,
    display_name: str = "CPU Processing",
    fallback_reason: Optional[str] = None,
) -> BackendDescriptor:
    return BackendDescriptor(
        kind=BackendKind.CPU,
        module_path=module_name(BackendKind.CPU, platform),
        display_name=display_name,
        fallback_reason=fallback_reason,
    )


def cuda_descriptor(platform: PlatformInfo, display_name: str = "NVIDIA CUDA GPU") -> BackendDescriptor:
    return BackendDescriptor(
        kind=BackendKind.CUDA,
        module_path=module_name(BackendKind.CUDA, platform),
        display_name=display_name,
    )


def openvino_descriptor(
    platform: PlatformInfo,
    display_name: str,
    device: Optional[GPUDevice] = None,
    fallback_reason: Optional[str] = None,
) -> BackendDescriptor:
    return BackendDescriptor(
        kind=BackendKind.OPENVINO,
        module_path=module_name(BackendKind.OPENVINO, platform),
        display_name=display_name,
        device_config=DeviceConfig.from_device(device) if device else None,
        fallback_reason=fallback_reason,
    )


def coreml_descriptor(platform: PlatformInfo, display_name: str = "Apple CoreML") -> BackendDescriptor:
    return BackendDescriptor(
        kind=BackendKind.COREML,
        module_path=module_name(BackendKind.COREML, platform),
        display_name=display_name,
    )


def performance_profile(descriptor: BackendDescriptor) -> Dict[str, str]:
    """Expected performance, power efficiency and memory usage labels."""
    kind = descriptor.kind
    form_factor = descriptor.device_config.form_factor if descriptor.device_config else None

    if kind is BackendKind.CUDA:
        performance, power = "high", "moderate"
    elif kind is BackendKind.OPENVINO:
        performance = "high" if form_factor == "discrete" else "medium"
        power = "excellent" if form_factor == "integrated" else "good"
    elif kind is BackendKind.COREML:
        performance, power = "medium", "excellent"
    else:
        performance, power = "low", "good"

    memory = descriptor.device_config.memory if descriptor.device_config else None
    return {
        "kind": kind.value,
        "expected_performance": performance,
        "power_efficiency": power,
        "memory_usage": "shared" if memory == "shared" else "dedicated",
    }
