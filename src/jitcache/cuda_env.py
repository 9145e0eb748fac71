"""Simulation-safe queries of the active CUDA device and runtime.

Cache keys need the target architecture and the runtime version which
produced a binary. Both come from ``numba.cuda``; when running with
``NUMBA_ENABLE_CUDASIM=1`` fixed placeholder values are returned so keys
can still be formed (and never collide with real device keys).
"""
from __future__ import annotations

from functools import lru_cache
import os

from numba import cuda


CUDA_SIMULATION: bool = os.environ.get("NUMBA_ENABLE_CUDASIM") == "1"

SIMULATOR_ARCH = "cudasim"
SIMULATOR_RUNTIME_VERSION = 0


def is_cudasim_enabled() -> bool:
    """Return ``True`` when running under the CUDA simulator."""

    return CUDA_SIMULATION


def format_arch(compute_capability: tuple[int, int]) -> str:
    """Format a ``(major, minor)`` compute capability as ``sm_XY``."""

    major, minor = compute_capability
    return f"sm_{major}{minor}"


def encode_runtime_version(version: tuple[int, int]) -> int:
    """Encode ``(major, minor)`` the way ``CUDART_VERSION`` does.

    ``(12, 2)`` becomes ``12020``.
    """

    major, minor = version
    return major * 1000 + minor * 10


def current_target_arch() -> str:
    """Return the architecture string of the current CUDA device.

    Raises
    ------
    RuntimeError
        If no CUDA device is available outside simulator mode.
    """

    if CUDA_SIMULATION:  # pragma: no cover - simulated
        return SIMULATOR_ARCH
    if not cuda.is_available():
        raise RuntimeError("No CUDA device is available")
    return format_arch(cuda.get_current_device().compute_capability)


@lru_cache(maxsize=1)
def _device_runtime_version() -> int:
    return encode_runtime_version(cuda.runtime.get_version())


def runtime_version() -> int:
    """Return the encoded CUDA runtime version, queried once per process.

    Binaries are not portable between runtime versions, so this value is
    part of every cache key.

    Raises
    ------
    RuntimeError
        If the CUDA runtime is unavailable outside simulator mode.
    """

    if CUDA_SIMULATION:  # pragma: no cover - simulated
        return SIMULATOR_RUNTIME_VERSION
    if not cuda.is_available():
        raise RuntimeError("The CUDA runtime is not available")
    return _device_runtime_version()


__all__ = [
    "CUDA_SIMULATION",
    "SIMULATOR_ARCH",
    "SIMULATOR_RUNTIME_VERSION",
    "current_target_arch",
    "encode_runtime_version",
    "format_arch",
    "is_cudasim_enabled",
    "runtime_version",
]
