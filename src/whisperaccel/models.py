"""Whisper model tiers, memory requirements and on-disk model lookup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

STANDARD_MODELS = ("tiny", "base", "small", "medium", "large", "large-v2", "large-v3")

# Largest first; memory recovery steps one entry to the right.
MODEL_HIERARCHY = ("large-v3", "large-v2", "large", "medium", "small", "base", "tiny")

# Models an integrated (shared-memory) GPU is trusted with.
SHARED_MEMORY_MODELS = ("tiny", "base", "small", "medium")

LARGE_MODELS = ("large", "large-v2", "large-v3")

# Large-tier requirement used by device selection (realistic for FP16).
LARGE_MODEL_MEMORY_MB = 6400

# The GPU configuration layer historically budgeted 4 GB for the same
# models. Kept addressable so the two tables can be compared, never merged.
LEGACY_LARGE_MODEL_MEMORY_MB = 4096

DEFAULT_MEMORY_MB = 2048

_BASE_MEMORY_MB: Dict[str, int] = {
    "tiny": 1024,
    "base": 1024,
    "small": 2048,
    "medium": 3072,
}

_QUANTIZATION_MARKERS = ("-q5_", "-q8_")


def base_model_name(model: str) -> str:
    """Strip a quantization suffix: "small.en-q8_0" -> "small.en", "tiny-q5_1" -> "tiny"."""
    if any(marker in model for marker in _QUANTIZATION_MARKERS):
        return model.split("-q")[0]
    return model


def is_quantized(model: str) -> bool:
    return base_model_name(model) != model


def memory_table(large_model_mb: int = LARGE_MODEL_MEMORY_MB) -> Dict[str, int]:
    table = dict(_BASE_MEMORY_MB)
    for name in LARGE_MODELS:
        table[name] = large_model_mb
    return table


def model_memory_requirement(model: str, large_model_mb: int = LARGE_MODEL_MEMORY_MB) -> int:
    """Required device memory in MB for a model (quantized names use their base model)."""
    return memory_table(large_model_mb).get(base_model_name(model), DEFAULT_MEMORY_MB)


def is_supported_model(model: str) -> bool:
    """Whether a backend can run this model.

    Standard names are always supported, quantized variants are supported
    when their base model is. Unknown names are assumed supported.
    """
    if model in STANDARD_MODELS:
        return True
    if is_quantized(model):
        return base_model_name(model) in STANDARD_MODELS
    logger.warning("Unknown model %r - assuming supported", model)
    return True


def fits_shared_memory(model: str) -> bool:
    return base_model_name(model) in SHARED_MEMORY_MODELS


def smaller_model(model: str) -> str:
    """Next smaller tier, or the model itself when already smallest or unknown."""
    try:
        index = MODEL_HIERARCHY.index(model)
    except ValueError:
        return model
    if index == len(MODEL_HIERARCHY) - 1:
        return model
    return MODEL_HIERARCHY[index + 1]


class ModelStore:
    """Read-only view over a directory of downloaded ggml models."""

    def __init__(self, models_path: Optional[Path]):
        self.models_path = Path(models_path) if models_path else None

    def model_path(self, model: str) -> Optional[Path]:
        if self.models_path is None:
            return None
        return self.models_path / f"ggml-{model}.bin"

    def has_model(self, model: str) -> bool:
        path = self.model_path(model)
        return path is not None and path.is_file()

    def has_encoder_model(self, model: str) -> bool:
        if self.models_path is None:
            return False
        return (self.models_path / f"ggml-{model}-encoder.mlmodelc").exists()

    def installed_models(self) -> List[str]:
        if self.models_path is None or not self.models_path.is_dir():
            return []
        names = []
        for entry in self.models_path.iterdir():
            if entry.name.startswith("ggml-") and entry.name.endswith(".bin"):
                names.append(entry.name[len("ggml-"):-len(".bin")])
        return sorted(names)
