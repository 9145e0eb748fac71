"""Configuration for the kernel cache and compile orchestration.

Every option can be set from the environment through
:meth:`CacheSettings.from_environ`. Settings objects are passed explicitly
to :class:`~jitcache.cache.KernelCache` and
:class:`~jitcache.orchestrator.CompileOrchestrator`.
"""

from enum import Enum
import os
from pathlib import Path
from typing import Mapping, Optional
from warnings import warn

from attrs import define, field, validators as val

from jitcache._utils import (
    gttype_validator,
    opt_gttype_validator,
    optional_path,
)


ENV_SYS_CACHE_PATH = "JITCACHE_SYS_CACHE_PATH"
ENV_USER_CACHE_PATH = "JITCACHE_CACHE_PATH"
ENV_READ_DISABLE = "JITCACHE_CACHE_READ_DISABLE"
ENV_WRITE_DISABLE = "JITCACHE_CACHE_WRITE_DISABLE"
ENV_PROCESS = "JITCACHE_PROCESS"
ENV_PROCESS_HELPER = "JITCACHE_PROCESS_HELPER"
ENV_HELPER_BACKEND = "JITCACHE_HELPER_BACKEND"

DEFAULT_BUSY_TIMEOUT = 5.0


class CompileMode(Enum):
    """Where compilation happens on a cache miss.

    DEFAULT
        Compile in-process when the compile lock is free, otherwise in a
        subprocess; fall back to waiting for the lock if the subprocess
        fails.
    FORCE_IN_PROCESS
        Only compile in-process, waiting for the lock if necessary.
    FORCE_OUT_PROCESS
        Compile in a subprocess; wait for the lock and compile in-process
        only if the subprocess fails.
    """

    DEFAULT = "2"
    FORCE_IN_PROCESS = "0"
    FORCE_OUT_PROCESS = "1"

    @classmethod
    def from_value(cls, value) -> "CompileMode":
        """Interpret an environment-style value.

        ``"0"`` forces in-process, ``"1"`` forces out-of-process, and
        anything else (including unset) selects the adaptive default.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.DEFAULT
        value = str(value).strip()
        if value == cls.FORCE_IN_PROCESS.value:
            return cls.FORCE_IN_PROCESS
        if value == cls.FORCE_OUT_PROCESS.value:
            return cls.FORCE_OUT_PROCESS
        if value not in ("", cls.DEFAULT.value):
            warn(
                f"Unrecognised compile mode {value!r}; using the adaptive "
                "default",
                RuntimeWarning,
            )
        return cls.DEFAULT


def _flag_set(environ: Mapping[str, str], name: str) -> bool:
    return bool(environ.get(name, ""))


@define
class CacheSettings:
    """Settings for kernel caching and compilation.

    Parameters
    ----------
    sys_cache_path
        Override for the read-only system tier. None derives a path next
        to the installed package.
    user_cache_path
        Override for the writable user tier. None searches the platform
        cache directory, the home directory and the temp directory.
    read_disabled
        When True, cache lookups always miss.
    write_disabled
        When True, cache stores are no-ops.
    compile_mode
        In-process / out-of-process policy on a cache miss.
    helper_path
        Override for the subprocess compile helper executable.
    busy_timeout
        Seconds a writer waits for another process holding the store.
    subprocess_timeout
        Seconds a subprocess compile may take before the child is killed.
        None waits indefinitely.
    """

    sys_cache_path: Optional[Path] = field(
        default=None,
        validator=val.optional(val.instance_of(Path)),
        converter=optional_path,
    )
    user_cache_path: Optional[Path] = field(
        default=None,
        validator=val.optional(val.instance_of(Path)),
        converter=optional_path,
    )
    read_disabled: bool = field(
        default=False,
        validator=val.instance_of(bool),
    )
    write_disabled: bool = field(
        default=False,
        validator=val.instance_of(bool),
    )
    compile_mode: CompileMode = field(
        default=CompileMode.DEFAULT,
        converter=CompileMode.from_value,
    )
    helper_path: Optional[Path] = field(
        default=None,
        validator=val.optional(val.instance_of(Path)),
        converter=optional_path,
    )
    busy_timeout: float = field(
        default=DEFAULT_BUSY_TIMEOUT,
        validator=gttype_validator((int, float), 0),
    )
    subprocess_timeout: Optional[float] = field(
        default=None,
        validator=opt_gttype_validator((int, float), 0),
    )

    @classmethod
    def from_environ(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides
    ) -> "CacheSettings":
        """Build settings from environment variables.

        Parameters
        ----------
        environ
            Mapping to read from. Defaults to ``os.environ``.
        **overrides
            Field values which take precedence over the environment.
        """
        if environ is None:
            environ = os.environ
        values = dict(
            sys_cache_path=environ.get(ENV_SYS_CACHE_PATH),
            user_cache_path=environ.get(ENV_USER_CACHE_PATH),
            read_disabled=_flag_set(environ, ENV_READ_DISABLE),
            write_disabled=_flag_set(environ, ENV_WRITE_DISABLE),
            compile_mode=environ.get(ENV_PROCESS),
            helper_path=environ.get(ENV_PROCESS_HELPER),
        )
        values.update(overrides)
        return cls(**values)
