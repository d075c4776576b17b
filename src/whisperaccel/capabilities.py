"""Capability snapshot describing which compute backends this machine offers.

The snapshot is produced by an external hardware probe and consumed
read-only by selection. Nothing here talks to drivers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

SHARED = "shared"

FormFactor = Literal["discrete", "integrated"]
PerformanceTier = Literal["high", "medium", "low"]
MemoryMB = Union[int, Literal["shared"]]

FORM_FACTORS = ("discrete", "integrated")
PERFORMANCE_TIERS = ("high", "medium", "low")


@dataclass(frozen=True)
class GPUDevice:
    """A single enumerated GPU.

    ``device_id`` is the runtime device string (e.g. "GPU.0") handed to the
    acceleration runtime; ``id`` is the stable identifier users pick in
    settings (e.g. "intel_arc_a770_0").
    """
    id: str
    display_name: str
    device_id: str
    memory_mb: MemoryMB
    form_factor: FormFactor = "integrated"
    driver_version: Optional[str] = None
    opencl_ok: bool = True
    vulkan_ok: bool = False
    performance_tier: PerformanceTier = "medium"

    def __post_init__(self) -> None:
        if self.form_factor not in FORM_FACTORS:
            raise ValueError(f"Unknown form factor {self.form_factor!r} for device {self.id}")
        if self.performance_tier not in PERFORMANCE_TIERS:
            raise ValueError(f"Unknown performance tier {self.performance_tier!r} for device {self.id}")
        if self.memory_mb == SHARED:
            if self.form_factor != "integrated":
                raise ValueError(f"Device {self.id}: shared memory is only valid for integrated GPUs")
        elif not isinstance(self.memory_mb, int) or isinstance(self.memory_mb, bool) or self.memory_mb < 0:
            raise ValueError(f"Device {self.id}: memory_mb must be a non-negative int or 'shared'")

    @property
    def shared_memory(self) -> bool:
        return self.memory_mb == SHARED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "device_id": self.device_id,
            "memory_mb": self.memory_mb,
            "form_factor": self.form_factor,
            "driver_version": self.driver_version,
            "opencl_ok": self.opencl_ok,
            "vulkan_ok": self.vulkan_ok,
            "performance_tier": self.performance_tier,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GPUDevice":
        memory = d.get("memory_mb", d.get("memory", SHARED))
        if memory != SHARED:
            memory = int(memory)
        return cls(
            id=str(d["id"]),
            display_name=str(d.get("display_name", d.get("name", d["id"]))),
            device_id=str(d.get("device_id", d.get("deviceId", "GPU"))),
            memory_mb=memory,
            form_factor=d.get("form_factor", d.get("type", "integrated")),
            driver_version=d.get("driver_version"),
            opencl_ok=bool(d.get("opencl_ok", True)),
            vulkan_ok=bool(d.get("vulkan_ok", False)),
            performance_tier=d.get("performance_tier", d.get("performance", "medium")),
        )


@dataclass(frozen=True)
class Topology:
    multi_gpu: bool = False
    hybrid_system: bool = False


@dataclass(frozen=True)
class CapabilityModel:
    """Immutable snapshot of the compute backends present on this machine.

    Attributes:
        nvidia: A discrete NVIDIA (CUDA) GPU is present
        intel: Intel units usable through OpenVINO
        intel_all: Every enumerated Intel unit (user overrides resolve here)
        apple: Apple unified-memory GPU (CoreML) is available
        cpu: CPU processing is available (always true in practice)
        openvino_version: Installed OpenVINO runtime version, None when absent
        topology: Multi-GPU / hybrid flags
    """
    nvidia: bool = False
    intel: Tuple[GPUDevice, ...] = ()
    intel_all: Tuple[GPUDevice, ...] = ()
    apple: bool = False
    cpu: bool = True
    openvino_version: Optional[str] = None
    topology: Topology = field(default_factory=Topology)

    def __post_init__(self) -> None:
        # Accept lists from callers but store tuples so the snapshot stays hashable.
        object.__setattr__(self, "intel", tuple(self.intel))
        object.__setattr__(self, "intel_all", tuple(self.intel_all))
        self._check_ids(self.intel, "intel")
        self._check_ids(self.intel_all, "intel_all")
        by_id = {d.id: d for d in self.intel_all}
        for device in self.intel:
            other = by_id.get(device.id)
            if other is not None and other != device:
                raise ValueError(f"Device id {device.id!r} describes two different devices")

    @staticmethod
    def _check_ids(devices: Tuple[GPUDevice, ...], label: str) -> None:
        seen = set()
        for device in devices:
            if device.id in seen:
                raise ValueError(f"Duplicate device id {device.id!r} in {label}")
            seen.add(device.id)

    @classmethod
    def cpu_only(cls) -> "CapabilityModel":
        return cls()

    def all_intel_devices(self) -> Tuple[GPUDevice, ...]:
        """Every known Intel unit, usable ones first, without duplicates."""
        seen = {d.id for d in self.intel}
        return self.intel + tuple(d for d in self.intel_all if d.id not in seen)

    def summary(self) -> Dict[str, Any]:
        return {
            "nvidia": self.nvidia,
            "intel_count": len(self.intel),
            "apple": self.apple,
            "openvino_version": self.openvino_version,
            "multi_gpu": self.topology.multi_gpu,
            "hybrid_system": self.topology.hybrid_system,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nvidia": self.nvidia,
            "intel": [d.to_dict() for d in self.intel],
            "intel_all": [d.to_dict() for d in self.intel_all],
            "apple": self.apple,
            "cpu": self.cpu,
            "openvino_version": self.openvino_version,
            "topology": {
                "multi_gpu": self.topology.multi_gpu,
                "hybrid_system": self.topology.hybrid_system,
            },
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CapabilityModel":
        topo = d.get("topology", d.get("capabilities", {})) or {}
        version = d.get("openvino_version")
        return cls(
            nvidia=bool(d.get("nvidia", False)),
            intel=tuple(GPUDevice.from_dict(x) for x in d.get("intel", []) or []),
            intel_all=tuple(GPUDevice.from_dict(x) for x in d.get("intel_all", []) or []),
            apple=bool(d.get("apple", False)),
            cpu=bool(d.get("cpu", True)),
            # The original probe reported a missing runtime as `false`.
            openvino_version=str(version) if version else None,
            topology=Topology(
                multi_gpu=bool(topo.get("multi_gpu", topo.get("multiGPU", False))),
                hybrid_system=bool(topo.get("hybrid_system", topo.get("hybridSystem", False))),
            ),
        )


def capabilities_from_file(path: Path) -> CapabilityModel:
    """Load a capability snapshot from a YAML (or JSON) file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Capability snapshot not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Capability snapshot must be a mapping")
    return CapabilityModel.from_dict(data)


class CapabilityCache:
    """Caller-owned cache around a capability probe.

    Usage:
        cache = CapabilityCache(probe)
        caps = cache.get()      # probes once
        caps = cache.get()      # cached
        cache.invalidate()      # next get() probes again
        caps = cache.refresh()  # probe now
    """

    def __init__(self, probe: Callable[[], CapabilityModel]):
        self._probe = probe
        self._value: Optional[CapabilityModel] = None

    @property
    def cached(self) -> bool:
        return self._value is not None

    def get(self) -> CapabilityModel:
        if self._value is None:
            self._value = self._probe()
        return self._value

    def invalidate(self) -> None:
        self._value = None

    def refresh(self) -> CapabilityModel:
        self.invalidate()
        return self.get()
