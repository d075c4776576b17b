"""Last-resort legacy loader.

Used when the capability-aware pipeline fails before it can even build a
fallback chain. The backend is picked from the platform and the single
stored ``use_cuda`` preference, with no capability awareness:

    win32 + use_cuda + nvidia-smi reports CUDA   -> addon
    win32 + use_cuda, no CUDA                    -> addon_no_cuda
    Apple Silicon with an encoder model          -> addon_coreml
    anything else                                -> addon

If the chosen artifact cannot be loaded, the plain ``addon`` build is tried
before giving up with ``LegacyFallbackFailed``.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from typing import Callable, List, Optional

from .descriptor import (
    LEGACY_COREML_MODULE,
    LEGACY_MODULE,
    LEGACY_NO_CUDA_MODULE,
    BackendDescriptor,
    BackendKind,
)
from .errors import LegacyFallbackFailed, LoadError
from .loader import BackendAdapter, BackendLoader
from .models import ModelStore
from .platforms import LINUX, WIN32, PlatformInfo
from .utils import subprocess_flags

logger = logging.getLogger(__name__)

_CUDA_VERSION_RE = re.compile(r"CUDA Version: (\d+\.\d+)")


def detect_cuda_version(timeout: float = 5.0) -> Optional[str]:
    """CUDA version reported by nvidia-smi, or None when unavailable."""
    exe = shutil.which("nvidia-smi")
    if not exe:
        return None
    try:
        proc = subprocess.run(
            [exe],
            capture_output=True,
            text=True,
            timeout=timeout,
            **subprocess_flags(),
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("CUDA detection failed: %s", exc)
        return None

    match = _CUDA_VERSION_RE.search(proc.stdout or "")
    if not match:
        logger.warning("No CUDA version found in nvidia-smi output")
        return None
    return match.group(1)


def has_cuda_support(platform: PlatformInfo) -> bool:
    if platform.system not in (WIN32, LINUX):
        return False
    return detect_cuda_version() is not None


def legacy_descriptor(
    model: str,
    platform: PlatformInfo,
    use_cuda: bool,
    model_store: Optional[ModelStore] = None,
    cuda_check: Optional[Callable[[PlatformInfo], bool]] = None,
) -> BackendDescriptor:
    cuda_check = cuda_check or has_cuda_support

    if platform.system == WIN32 and use_cuda:
        if cuda_check(platform):
            return BackendDescriptor(BackendKind.CUDA, LEGACY_MODULE, "Legacy CUDA backend")
        return BackendDescriptor(BackendKind.CPU, LEGACY_NO_CUDA_MODULE, "Legacy CPU backend (no CUDA)")

    if platform.is_apple_silicon and model_store is not None and model_store.has_encoder_model(model):
        return BackendDescriptor(BackendKind.COREML, LEGACY_COREML_MODULE, "Legacy CoreML backend")

    return BackendDescriptor(BackendKind.CPU, LEGACY_MODULE, "Legacy backend")


def load_legacy_backend(
    model: str,
    *,
    loader: BackendLoader,
    platform: Optional[PlatformInfo] = None,
    use_cuda: bool = False,
    model_store: Optional[ModelStore] = None,
    cuda_check: Optional[Callable[[PlatformInfo], bool]] = None,
    correlation_id: Optional[str] = None,
) -> BackendAdapter:
    """Load a backend without consulting capabilities. Raises LegacyFallbackFailed."""
    platform = platform or PlatformInfo.current()
    primary = legacy_descriptor(model, platform, use_cuda, model_store, cuda_check)

    candidates: List[BackendDescriptor] = [primary]
    if primary.module_path != LEGACY_MODULE:
        candidates.append(BackendDescriptor(BackendKind.CPU, LEGACY_MODULE, "Legacy backend"))

    loader.emitter.recovery(
        "legacy_fallback_started",
        "Attempting emergency fallback to legacy backend loading",
        "warning",
        {"model": model, "platform": str(platform), "use_cuda": use_cuda, "module_path": primary.module_path},
        correlation_id,
    )

    errors: List[str] = []
    for descriptor in candidates:
        try:
            path = loader.resolve_module_path(descriptor.module_path, descriptor)
            module = loader.import_module(path, descriptor)
            entry = loader.entry_point(module, descriptor)
        except LoadError as exc:
            logger.warning("Legacy backend %s unavailable: %s", descriptor.module_path, exc)
            errors.append(str(exc))
            continue

        loader.emitter.recovery(
            "legacy_fallback_success",
            "Emergency fallback to legacy backend loading successful",
            "success",
            {"module_path": descriptor.module_path, "artifact": str(path)},
            correlation_id,
        )
        return BackendAdapter(entry, descriptor, {}, path)

    loader.emitter.recovery(
        "legacy_fallback_failed",
        "Legacy backend loading failed",
        "error",
        {"errors": errors},
        correlation_id,
    )
    raise LegacyFallbackFailed("Legacy backend loading failed: " + "; ".join(errors))
