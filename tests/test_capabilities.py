"""Tests for the capability snapshot types."""

from pathlib import Path

import pytest

from whisperaccel.capabilities import (
    CapabilityCache,
    CapabilityModel,
    GPUDevice,
    capabilities_from_file,
)


def _arc(**overrides) -> GPUDevice:
    fields = dict(
        id="intel_arc_a770_0",
        display_name="Arc A770",
        device_id="GPU.1",
        memory_mb=16384,
        form_factor="discrete",
        performance_tier="high",
    )
    fields.update(overrides)
    return GPUDevice(**fields)


class TestGPUDevice:
    """Tests for GPUDevice validation."""

    def test_shared_memory_integrated(self):
        dev = GPUDevice(id="igpu", display_name="Iris Xe", device_id="GPU.0", memory_mb="shared")
        assert dev.shared_memory
        assert dev.form_factor == "integrated"

    def test_shared_memory_rejected_for_discrete(self):
        with pytest.raises(ValueError, match="shared memory"):
            GPUDevice(id="d", display_name="D", device_id="GPU.1", memory_mb="shared", form_factor="discrete")

    def test_negative_memory_rejected(self):
        with pytest.raises(ValueError):
            _arc(memory_mb=-1)

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError, match="performance tier"):
            _arc(performance_tier="ultra")

    def test_from_dict_accepts_probe_keys(self):
        dev = GPUDevice.from_dict(
            {
                "id": "intel_arc_a770_0",
                "name": "Arc A770",
                "deviceId": "GPU.1",
                "memory": 16384,
                "type": "discrete",
                "performance": "high",
            }
        )
        assert dev == _arc()

    def test_to_dict_round_trip(self):
        dev = _arc(driver_version="31.0.101.5186")
        assert GPUDevice.from_dict(dev.to_dict()) == dev


class TestCapabilityModel:
    """Tests for CapabilityModel invariants."""

    def test_defaults_are_cpu_only(self):
        caps = CapabilityModel.cpu_only()
        assert caps.cpu is True
        assert not caps.nvidia and not caps.apple
        assert caps.intel == ()
        assert caps.openvino_version is None

    def test_lists_become_tuples_and_snapshot_is_hashable(self):
        caps = CapabilityModel(intel=[_arc()], intel_all=[_arc()])
        assert isinstance(caps.intel, tuple)
        hash(caps)

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="Duplicate device id"):
            CapabilityModel(intel=[_arc(), _arc(device_id="GPU.2")])

    def test_conflicting_ids_across_lists_rejected(self):
        with pytest.raises(ValueError, match="two different devices"):
            CapabilityModel(intel=[_arc()], intel_all=[_arc(memory_mb=8192)])

    def test_all_intel_devices_deduplicates(self):
        igpu = GPUDevice(id="igpu", display_name="Iris Xe", device_id="GPU.0", memory_mb="shared", opencl_ok=False)
        caps = CapabilityModel(intel=[_arc()], intel_all=[igpu, _arc()])
        assert [d.id for d in caps.all_intel_devices()] == ["intel_arc_a770_0", "igpu"]

    def test_from_dict_treats_false_runtime_as_missing(self):
        caps = CapabilityModel.from_dict({"nvidia": True, "openvino_version": False})
        assert caps.nvidia
        assert caps.openvino_version is None

    def test_from_dict_reads_topology(self):
        caps = CapabilityModel.from_dict({"capabilities": {"multiGPU": True, "hybridSystem": True}})
        assert caps.topology.multi_gpu
        assert caps.topology.hybrid_system


def test_capabilities_from_yaml_file(tmp_path: Path):
    path = tmp_path / "caps.yaml"
    path.write_text(
        "nvidia: false\n"
        "openvino_version: '2024.6.0'\n"
        "intel:\n"
        "  - id: intel_arc_a770_0\n"
        "    display_name: Arc A770\n"
        "    device_id: GPU.1\n"
        "    memory_mb: 16384\n"
        "    form_factor: discrete\n"
        "    performance_tier: high\n",
        encoding="utf-8",
    )
    caps = capabilities_from_file(path)
    assert caps.openvino_version == "2024.6.0"
    assert caps.intel == (_arc(),)


def test_capabilities_from_json_file(tmp_path: Path):
    path = tmp_path / "caps.json"
    path.write_text('{"apple": true}', encoding="utf-8")
    assert capabilities_from_file(path).apple is True


def test_capabilities_from_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        capabilities_from_file(tmp_path / "nope.yaml")


def test_capabilities_file_must_be_mapping(tmp_path: Path):
    path = tmp_path / "caps.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        capabilities_from_file(path)


def test_capability_cache_probes_once_until_invalidated():
    calls = []

    def probe():
        calls.append(1)
        return CapabilityModel(nvidia=len(calls) > 1)

    cache = CapabilityCache(probe)
    assert not cache.cached
    first = cache.get()
    assert cache.get() is first
    assert len(calls) == 1

    cache.invalidate()
    assert not cache.cached
    assert cache.get().nvidia is True
    assert len(calls) == 2

    cache.refresh()
    assert len(calls) == 3
