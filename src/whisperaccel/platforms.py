"""Host platform identification.

Platform ids follow the values of ``sys.platform`` ("win32", "linux",
"darwin"); architectures are normalized to "x64" / "arm64".
"""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass

WIN32 = "win32"
LINUX = "linux"
DARWIN = "darwin"

X64 = "x64"
ARM64 = "arm64"

_ARCH_ALIASES = {
    "x86_64": X64,
    "amd64": X64,
    "x64": X64,
    "arm64": ARM64,
    "aarch64": ARM64,
    "armv8": ARM64,
}


def normalize_platform(value: str) -> str:
    value = (value or "").lower()
    if value.startswith("linux"):
        return LINUX
    if value in (WIN32, "windows", "cygwin"):
        return WIN32
    if value in (DARWIN, "macos", "mac"):
        return DARWIN
    return value


def normalize_arch(value: str) -> str:
    value = (value or "").lower()
    return _ARCH_ALIASES.get(value, value)


@dataclass(frozen=True)
class PlatformInfo:
    """Platform id plus CPU architecture."""
    system: str
    arch: str

    @classmethod
    def current(cls) -> "PlatformInfo":
        return cls(normalize_platform(sys.platform), normalize_arch(_platform.machine()))

    @classmethod
    def of(cls, system: str, arch: str) -> "PlatformInfo":
        return cls(normalize_platform(system), normalize_arch(arch))

    @property
    def is_apple_silicon(self) -> bool:
        return self.system == DARWIN and self.arch == ARM64

    @property
    def is_known(self) -> bool:
        return self.system in (WIN32, LINUX, DARWIN)

    def __str__(self) -> str:
        return f"{self.system}-{self.arch}"
