"""
Platform detection helpers for Workload-Py.

Centralizes OS and architecture differences so that manifest resolution can
compare against a single platform string such as ``linux-x64`` or
``osx-arm64`` instead of scattering ``sys.platform`` checks.
"""

import platform
import sys
from typing import Optional

ANY_PLATFORM = "any"

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "x86",
    "i686": "x86",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}


def is_macos() -> bool:
    """Return True when running on macOS."""
    return sys.platform == "darwin"


def is_linux() -> bool:
    """Return True when running on Linux."""
    return sys.platform.startswith("linux")


def is_windows() -> bool:
    """Return True when running on Windows."""
    return sys.platform == "win32"


def os_name() -> str:
    """Return the OS part of the platform string."""
    if is_macos():
        return "osx"
    if is_windows():
        return "win"
    if is_linux():
        return "linux"
    return sys.platform


def architecture(machine: Optional[str] = None) -> str:
    """Normalize ``platform.machine()`` to the architecture names manifests use."""
    raw = (machine or platform.machine() or "").lower()
    return _ARCH_ALIASES.get(raw, raw or "unknown")


def current_platform() -> str:
    """Return the host platform string, e.g. ``linux-x64``."""
    return f"{os_name()}-{architecture()}"


def lock_file_name() -> str:
    """Return the name of the lock file kept in the installation root."""
    if is_windows():
        return "workload.lock"
    return ".workload.lock"
