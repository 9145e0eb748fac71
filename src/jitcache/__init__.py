"""
jitcache: persistent cache and compile orchestration for JIT-built kernels
"""

from importlib.metadata import PackageNotFoundError, version

from jitcache.cache import KernelCache                          # noqa
from jitcache.cache_key import (                                # noqa
    CacheKey,
    CodeObject,
    hash_generator_inputs,
)
from jitcache.config import CacheSettings, CompileMode         # noqa
from jitcache.orchestrator import (                             # noqa
    CompileOrchestrator,
    cached_compile,
)
from jitcache.store import PersistentStore                      # noqa
from jitcache.subprocess_compiler import (                      # noqa
    CompileError,
    HelperNotFoundError,
    SubprocessCompiler,
)
from jitcache.time_logger import TimeLogger, default_timelogger  # noqa

__all__ = [
    "CacheKey",
    "CacheSettings",
    "CodeObject",
    "CompileError",
    "CompileMode",
    "CompileOrchestrator",
    "HelperNotFoundError",
    "KernelCache",
    "PersistentStore",
    "SubprocessCompiler",
    "TimeLogger",
    "cached_compile",
    "default_timelogger",
    "hash_generator_inputs",
]

try:
    __version__ = version("jitcache")
except PackageNotFoundError:
    # Package is not installed
    __version__ = "unknown"
