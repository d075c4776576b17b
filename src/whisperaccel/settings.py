"""Settings, user preferences and engine configuration.

Settings live in a YAML mapping. ``load_settings`` merges a file over
``default_settings()``; ``EngineConfig.from_settings`` turns the mapping
into the typed configuration the engine runs with.
"""

from __future__ import annotations

import copy
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml

from .models import LARGE_MODEL_MEMORY_MB

logger = logging.getLogger(__name__)


def default_settings() -> Dict[str, Any]:
    return {
        "selected_gpu_id": "auto",
        "gpu_preference": ["nvidia", "intel", "apple", "cpu"],
        "gpu_auto_detection": True,
        "use_cuda": False,  # legacy loader only
        "addons_dir": "addons",
        "models_path": None,
        "openvino": {
            "cache_dir": None,  # None = ~/.openvino-cache
            "enable_optimizations": True,
        },
        "validation": {
            "timeout_s": 5.0,
            "openvino_timeout_s": 10.0,  # device initialization is slower
        },
        "memory": {
            "large_model_mb": LARGE_MODEL_MEMORY_MB,
        },
        "recovery": {
            "max_retries": 3,
            "base_delay_s": 2.0,
        },
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_settings(settings_path: Optional[Path]) -> Dict[str, Any]:
    if settings_path is None:
        return default_settings()

    settings_path = Path(settings_path)
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings not found: {settings_path}")

    data = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("Settings YAML must be a mapping")
    return _merge(default_settings(), data)


def default_openvino_cache_dir() -> Path:
    return Path.home() / ".openvino-cache"


@dataclass(frozen=True)
class EngineConfig:
    """Typed engine configuration.

    Attributes:
        addons_dir: Directory holding the backend module artifacts
        models_path: Directory holding ggml model files (None = unknown)
        openvino_cache_dir: Compiled-model cache handed to OpenVINO
        openvino_enable_optimizations: OpenVINO graph optimizations switch
        validation_timeout_s: Budget for the validation call
        openvino_validation_timeout_s: Same, for the OpenVINO backend
        large_model_mb: Memory requirement of large-tier models
        max_retries: Cap on strategy-based recovery attempts
        base_delay_s: Backoff unit for the generic retry strategy
    """
    addons_dir: Path = Path("addons")
    models_path: Optional[Path] = None
    openvino_cache_dir: Path = field(default_factory=default_openvino_cache_dir)
    openvino_enable_optimizations: bool = True
    validation_timeout_s: float = 5.0
    openvino_validation_timeout_s: float = 10.0
    large_model_mb: int = LARGE_MODEL_MEMORY_MB
    max_retries: int = 3
    base_delay_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "EngineConfig":
        ov = settings.get("openvino", {}) or {}
        validation = settings.get("validation", {}) or {}
        memory = settings.get("memory", {}) or {}
        recovery = settings.get("recovery", {}) or {}

        addons_dir = os.getenv("WA_ADDONS_DIR") or settings.get("addons_dir") or "addons"
        models_path = os.getenv("WA_MODELS_PATH") or settings.get("models_path")
        cache_dir = os.getenv("WA_OPENVINO_CACHE_DIR") or ov.get("cache_dir")

        return cls(
            addons_dir=Path(addons_dir),
            models_path=Path(models_path) if models_path else None,
            openvino_cache_dir=Path(cache_dir) if cache_dir else default_openvino_cache_dir(),
            openvino_enable_optimizations=bool(ov.get("enable_optimizations", True)),
            validation_timeout_s=float(validation.get("timeout_s", 5.0)),
            openvino_validation_timeout_s=float(validation.get("openvino_timeout_s", 10.0)),
            large_model_mb=int(memory.get("large_model_mb", LARGE_MODEL_MEMORY_MB)),
            max_retries=int(recovery.get("max_retries", 3)),
            base_delay_s=float(recovery.get("base_delay_s", 2.0)),
        )


@dataclass(frozen=True)
class UserPreference:
    """What the user asked for: a specific backend id or "auto", plus a vendor order."""
    selected_backend_id: str = "auto"
    priority_order: List[str] = field(default_factory=lambda: ["nvidia", "intel", "apple", "cpu"])
    use_cuda: bool = False
    auto_detection: bool = True
    overrides: Dict[str, Any] = field(default_factory=dict)

    def to_settings(self) -> Dict[str, Any]:
        return {
            "selected_gpu_id": self.selected_backend_id,
            "gpu_preference": list(self.priority_order),
            "use_cuda": self.use_cuda,
            "gpu_auto_detection": self.auto_detection,
            "overrides": dict(self.overrides),
        }

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "UserPreference":
        return cls(
            selected_backend_id=str(settings.get("selected_gpu_id") or "auto"),
            priority_order=list(settings.get("gpu_preference") or ["nvidia", "intel", "apple", "cpu"]),
            use_cuda=bool(settings.get("use_cuda", False)),
            auto_detection=settings.get("gpu_auto_detection") is not False,
            overrides=dict(settings.get("overrides") or {}),
        )


class PreferenceStore:
    """Reads and writes the user's backend preference.

    With a path the preference is persisted in the settings YAML (other keys
    are preserved); without one it is kept in memory.
    """

    def __init__(self, path: Optional[Path] = None, initial: Optional[UserPreference] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._current = initial

    def read(self) -> UserPreference:
        with self._lock:
            if self._current is not None:
                return self._current
            if self.path is not None and self.path.exists():
                self._current = UserPreference.from_settings(load_settings(self.path))
            else:
                self._current = UserPreference()
            return self._current

    def write(self, preference: UserPreference) -> None:
        with self._lock:
            self._current = preference
            if self.path is None:
                return
            data: Dict[str, Any] = {}
            if self.path.exists():
                loaded = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
                if isinstance(loaded, dict):
                    data = loaded
            data.update(preference.to_settings())
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        logger.debug("Stored backend preference: %s", preference.selected_backend_id)

    @contextmanager
    def override(self, **changes: Any) -> Iterator[UserPreference]:
        """Temporarily replace fields of the preference; the original is restored on exit.

        Usage:
            with store.override(selected_backend_id="cpu", priority_order=["cpu"]):
                ...
        """
        original = self.read()
        temporary = replace(original, **changes)
        self.write(temporary)
        try:
            yield temporary
        finally:
            self.write(original)
