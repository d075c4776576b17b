"""Platform-aware fallback chains.

After a backend fails to load, the chain lists the next backends to try,
best first. The rules are a fixed table keyed by platform; every chain is
non-empty, at most three entries long, and ends with the CPU baseline.

    platform      failed backend        chain
    win32         cuda / coreml         openvino -> cpu
    win32         openvino / cpu        cpu
    linux         cuda / coreml         openvino -> cpu
    linux         openvino / cpu        cpu
    darwin/arm64  any                   cpu
    darwin/x64    any                   cpu
    other         any                   cpu
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .descriptor import BackendDescriptor, BackendKind, cpu_descriptor, openvino_descriptor
from .platforms import ARM64, DARWIN, LINUX, WIN32, PlatformInfo

logger = logging.getLogger(__name__)

MAX_CHAIN_LENGTH = 3

_FAILURE_REASONS = {
    BackendKind.CUDA: "NVIDIA CUDA failed",
    BackendKind.OPENVINO: "Intel OpenVINO failed",
    BackendKind.COREML: "Apple CoreML failed",
    BackendKind.CPU: "CPU backend failed",
}

# Platforms where an OpenVINO build exists to fall back to from another GPU runtime.
_OPENVINO_FALLBACK_PLATFORMS = (WIN32, LINUX)

_PLATFORM_LABELS = {
    WIN32: "Windows",
    LINUX: "Linux",
}


def _platform_label(platform: PlatformInfo) -> str:
    if platform.system == DARWIN:
        return "macOS ARM64" if platform.arch == ARM64 else "macOS Intel"
    return _PLATFORM_LABELS.get(platform.system, platform.system or "unknown")


def build_fallback_chain(
    failed: BackendDescriptor,
    platform: Optional[PlatformInfo] = None,
) -> List[BackendDescriptor]:
    """Ordered alternatives to ``failed`` for this platform. Pure and deterministic."""
    platform = platform or PlatformInfo.current()
    reason = _FAILURE_REASONS[failed.kind]
    label = _platform_label(platform)
    chain: List[BackendDescriptor] = []

    gpu_failed = failed.kind in (BackendKind.CUDA, BackendKind.COREML)
    if platform.system in _OPENVINO_FALLBACK_PLATFORMS and gpu_failed:
        chain.append(
            openvino_descriptor(
                platform,
                f"Intel OpenVINO ({label} Fallback from {failed.kind.value.upper()})",
                fallback_reason=reason,
            )
        )

    if chain:
        chain.append(
            cpu_descriptor(
                platform,
                f"CPU Processing ({label} Final Fallback)",
                fallback_reason="GPU acceleration failed",
            )
        )
    else:
        chain.append(cpu_descriptor(platform, f"CPU Processing ({label} Fallback)", fallback_reason=reason))

    logger.debug(
        "Created %d fallback options for %s on %s",
        len(chain),
        failed.kind.value,
        platform,
    )
    return chain
