from __future__ import annotations

import importlib.util
import shutil
from dataclasses import dataclass
from typing import Dict, Optional

from .descriptor import LEGACY_COREML_MODULE, LEGACY_MODULE, LEGACY_NO_CUDA_MODULE, BackendKind, module_name
from .errors import ModuleNotFound
from .legacy import detect_cuda_version
from .loader import BackendLoader
from .models import ModelStore
from .platforms import PlatformInfo
from .settings import EngineConfig


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    checks: Dict[str, Dict[str, object]]


def _artifact(loader: BackendLoader, stem: str) -> Dict[str, object]:
    try:
        path = loader.resolve_module_path(stem)
    except ModuleNotFound as e:
        return {"module": stem, "found": False, "note": str(e)}
    return {"module": stem, "found": True, "path": str(path)}


def run_doctor(config: Optional[EngineConfig] = None, platform: Optional[PlatformInfo] = None) -> DoctorReport:
    config = config or EngineConfig()
    platform = platform or PlatformInfo.current()
    loader = BackendLoader(config)
    checks: Dict[str, Dict[str, object]] = {}

    checks["platform"] = {"system": platform.system, "arch": platform.arch, "known": platform.is_known}
    checks["addons_dir"] = {"path": str(config.addons_dir), "exists": config.addons_dir.is_dir()}

    for kind in BackendKind:
        checks[f"backend_{kind.value}"] = _artifact(loader, module_name(kind, platform))

    for stem in (LEGACY_MODULE, LEGACY_NO_CUDA_MODULE, LEGACY_COREML_MODULE):
        checks[f"legacy_{stem}"] = _artifact(loader, stem)

    if config.models_path is not None:
        store = ModelStore(config.models_path)
        checks["models"] = {"path": str(config.models_path), "installed": store.installed_models()}

    nvidia_smi = shutil.which("nvidia-smi")
    checks["nvidia_smi"] = {
        "found": nvidia_smi is not None,
        "path": nvidia_smi,
        "cuda_version": detect_cuda_version() if nvidia_smi else None,
    }

    openvino_spec = importlib.util.find_spec("openvino")
    if openvino_spec is not None:
        checks["openvino"] = {"installed": True}
    else:
        checks["openvino"] = {
            "installed": False,
            "note": "Install the OpenVINO runtime to enable Intel GPU acceleration",
        }

    # A CPU build (or the plain legacy build) is enough to transcribe.
    ok = bool(checks["backend_cpu"]["found"] or checks[f"legacy_{LEGACY_MODULE}"]["found"])
    return DoctorReport(ok=ok, checks=checks)
