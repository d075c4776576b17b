"""Tests for model tiers, memory requirements and the model store."""

from pathlib import Path

import pytest

from whisperaccel.models import (
    DEFAULT_MEMORY_MB,
    LEGACY_LARGE_MODEL_MEMORY_MB,
    ModelStore,
    base_model_name,
    fits_shared_memory,
    is_quantized,
    is_supported_model,
    model_memory_requirement,
    smaller_model,
)


@pytest.mark.parametrize(
    "model, expected",
    [
        ("small.en-q8_0", "small.en"),
        ("tiny-q5_1", "tiny"),
        ("medium", "medium"),
        ("large-v3", "large-v3"),
    ],
)
def test_base_model_name(model, expected):
    assert base_model_name(model) == expected


def test_is_quantized():
    assert is_quantized("base-q5_1")
    assert not is_quantized("large-v2")


class TestMemory:
    """Tests for the per-model memory table."""

    def test_large_models_use_the_selection_table(self):
        assert model_memory_requirement("large-v3") == 6400
        assert model_memory_requirement("large", LEGACY_LARGE_MODEL_MEMORY_MB) == 4096

    def test_quantized_names_use_their_base(self):
        assert model_memory_requirement("medium-q5_0") == 3072

    def test_unknown_model_uses_default(self):
        assert model_memory_requirement("custom-finetune") == DEFAULT_MEMORY_MB


def test_supported_models():
    assert is_supported_model("base")
    assert is_supported_model("tiny-q5_1")
    assert not is_supported_model("bogus-q8_0")
    assert is_supported_model("my-custom-model")


def test_shared_memory_models():
    assert fits_shared_memory("medium")
    assert fits_shared_memory("small-q8_0")
    assert not fits_shared_memory("large-v2")


@pytest.mark.parametrize(
    "model, expected",
    [
        ("large-v3", "large-v2"),
        ("large", "medium"),
        ("base", "tiny"),
        ("tiny", "tiny"),
        ("unknown", "unknown"),
    ],
)
def test_smaller_model(model, expected):
    assert smaller_model(model) == expected


class TestModelStore:
    """Tests for the on-disk model lookup."""

    def test_without_path(self):
        store = ModelStore(None)
        assert store.model_path("base") is None
        assert not store.has_model("base")
        assert not store.has_encoder_model("base")
        assert store.installed_models() == []

    def test_lookup(self, tmp_path: Path):
        (tmp_path / "ggml-tiny.bin").write_bytes(b"\0")
        (tmp_path / "ggml-base-encoder.mlmodelc").mkdir()
        (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
        store = ModelStore(tmp_path)

        assert store.has_model("tiny")
        assert not store.has_model("base")
        assert store.has_encoder_model("base")
        assert store.installed_models() == ["tiny"]
