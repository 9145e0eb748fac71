"""Cache-aware kernel compilation.

:class:`CompileOrchestrator` turns a cache miss into a compiled kernel. The
in-process backend is assumed to allow only one invocation at a time, so
in-process compiles are serialised by a process-wide lock. When that lock
is busy the adaptive default compiles in a helper process instead, so a
long compile does not serialise unrelated ones; if the helper fails, the
request waits for the lock and compiles in-process after all.
"""

from pathlib import Path
import threading
from typing import Callable, Optional, Tuple, Union

from jitcache.cache import KernelCache
from jitcache.cache_key import CacheKey
from jitcache.config import CacheSettings, CompileMode
from jitcache.subprocess_compiler import SubprocessCompiler
from jitcache.time_logger import TimeLogger, default_timelogger


SourceGenerator = Callable[[str], str]
CompileBackend = Callable[[str, str], bytes]

IN_PROCESS = "inprocess"
SUBPROCESS = "subprocess"

# One in-process compile at a time per process, shared by all orchestrators
_COMPILE_LOCK = threading.Lock()


class CompileOrchestrator:
    """Look up, generate, compile and store kernels.

    Parameters
    ----------
    backend
        In-process compiler, called as ``backend(source_text, target_arch)``
        and returning the code object bytes.
    cache
        Cache to consult and fill. None compiles every request.
    subprocess_compiler
        Out-of-process compiler. Defaults to one built from ``settings``.
    settings
        Compile-mode and helper configuration. Defaults to
        ``cache.settings`` or :meth:`CacheSettings.from_environ`.
    compile_lock
        Lock serialising in-process compiles. Defaults to the process-wide
        lock.
    time_logger
        Receives generate/compile timings and cache messages.
    """

    def __init__(
        self,
        backend: CompileBackend,
        cache: Optional[KernelCache] = None,
        subprocess_compiler: Optional[SubprocessCompiler] = None,
        settings: Optional[CacheSettings] = None,
        compile_lock: Optional[threading.Lock] = None,
        time_logger: Optional[TimeLogger] = None,
    ) -> None:
        if settings is None:
            if cache is not None:
                settings = cache.settings
            else:
                settings = CacheSettings.from_environ()
        if subprocess_compiler is None:
            subprocess_compiler = SubprocessCompiler.from_settings(settings)

        self.backend = backend
        self.cache = cache
        self.subprocess_compiler = subprocess_compiler
        self.settings = settings
        self.compile_lock = (
            _COMPILE_LOCK if compile_lock is None else compile_lock
        )
        self.time_logger = (
            default_timelogger if time_logger is None else time_logger
        )
        self.time_logger._register_event(
            "rtc_generate", "codegen", "Kernel source generation"
        )
        self.time_logger._register_event(
            "rtc_compile", "build", "Kernel compilation"
        )
        self.time_logger._register_event(
            "rtc_cache", "runtime", "Kernel cache access"
        )

    def compile_inprocess(self, source_text: str, target_arch: str) -> bytes:
        """Run the in-process backend. The caller must hold the lock."""
        return self.backend(source_text, target_arch)

    def compile_subprocess(self, source_text: str, target_arch: str) -> bytes:
        """Run the backend in a helper process."""
        return self.subprocess_compiler.compile(source_text, target_arch)

    def _compile_locked(self, source_text, target_arch, kernel_name):
        with self.compile_lock:
            self.time_logger.start_event(
                "rtc_compile", kernel_name=kernel_name, path=IN_PROCESS
            )
            try:
                return self.compile_inprocess(source_text, target_arch)
            finally:
                self.time_logger.stop_event(
                    "rtc_compile", kernel_name=kernel_name
                )

    def _try_subprocess(self, source_text, target_arch, kernel_name):
        self.time_logger.start_event(
            "rtc_compile", kernel_name=kernel_name, path=SUBPROCESS
        )
        try:
            return self.compile_subprocess(source_text, target_arch)
        except Exception as e:
            self.time_logger.progress(
                "rtc_compile",
                f"subprocess compile of {kernel_name} failed, "
                f"falling back to in-process: {e}",
                kernel_name=kernel_name,
            )
            return None
        finally:
            self.time_logger.stop_event(
                "rtc_compile", kernel_name=kernel_name
            )

    def compile_with_fallback(
        self,
        source_text: str,
        target_arch: str,
        kernel_name: str = "",
    ) -> Tuple[bytes, str]:
        """Compile according to the configured mode.

        Returns
        -------
        tuple[bytes, str]
            The code object and the path which produced it,
            ``"inprocess"`` or ``"subprocess"``.

        Raises
        ------
        Exception
            Whatever the in-process backend raises; it is the last resort
            and is not retried.
        """
        mode = self.settings.compile_mode

        if mode is CompileMode.FORCE_IN_PROCESS:
            code = self._compile_locked(source_text, target_arch, kernel_name)
            return code, IN_PROCESS

        if mode is CompileMode.FORCE_OUT_PROCESS:
            code = self._try_subprocess(source_text, target_arch, kernel_name)
            if code is not None:
                return code, SUBPROCESS
            code = self._compile_locked(source_text, target_arch, kernel_name)
            return code, IN_PROCESS

        # in-process if nobody else is compiling
        if self.compile_lock.acquire(blocking=False):
            try:
                self.time_logger.start_event(
                    "rtc_compile", kernel_name=kernel_name, path=IN_PROCESS
                )
                try:
                    code = self.compile_inprocess(source_text, target_arch)
                finally:
                    self.time_logger.stop_event(
                        "rtc_compile", kernel_name=kernel_name
                    )
            finally:
                self.compile_lock.release()
            return code, IN_PROCESS

        code = self._try_subprocess(source_text, target_arch, kernel_name)
        if code is not None:
            return code, SUBPROCESS
        code = self._compile_locked(source_text, target_arch, kernel_name)
        return code, IN_PROCESS

    def cached_compile(
        self, key: CacheKey, generate_source: SourceGenerator
    ) -> bytes:
        """Return the code object for ``key``, compiling it on a miss.

        Parameters
        ----------
        key
            Identity of the kernel; ``key.target_arch`` is passed to the
            compiler.
        generate_source
            Called with ``key.kernel_name`` to produce source text. Only
            called on a cache miss.

        Returns
        -------
        bytes
            The compiled code object.

        Raises
        ------
        Exception
            Compilation failures after every fallback. Cache failures are
            never raised.
        """
        kernel_name = key.kernel_name
        if self.cache is not None:
            code = self.cache.lookup(key)
            if code is not None:
                self.time_logger.progress(
                    "rtc_cache", f"cache hit for {kernel_name}",
                    kernel_name=kernel_name,
                )
                return code

        self.time_logger.start_event("rtc_generate", kernel_name=kernel_name)
        try:
            source_text = generate_source(kernel_name)
        finally:
            self.time_logger.stop_event(
                "rtc_generate", kernel_name=kernel_name
            )
        if self.time_logger.verbosity == "debug":
            print(f"{source_text}\n// {kernel_name}")

        code, path = self.compile_with_fallback(
            source_text, key.target_arch, kernel_name
        )

        if self.cache is not None:
            stored = self.cache.store(key, code)
            self.time_logger.progress(
                "rtc_cache",
                f"{'stored' if stored else 'did not store'} {kernel_name} "
                f"({path})",
                kernel_name=kernel_name,
            )
        return code


def cached_compile(
    key: CacheKey,
    generate_source: SourceGenerator,
    backend: CompileBackend,
    cache: Optional[KernelCache] = None,
    settings: Optional[CacheSettings] = None,
    helper_path: Optional[Union[str, Path]] = None,
) -> bytes:
    """Compile ``key`` through a one-off :class:`CompileOrchestrator`.

    Convenience for callers without a long-lived orchestrator; the
    process-wide compile lock is still shared.
    """
    subprocess_compiler = None
    if helper_path is not None:
        subprocess_compiler = SubprocessCompiler(
            helper_path=helper_path,
            timeout=None if settings is None else settings.subprocess_timeout,
        )
    orchestrator = CompileOrchestrator(
        backend,
        cache=cache,
        subprocess_compiler=subprocess_compiler,
        settings=settings,
    )
    return orchestrator.cached_compile(key, generate_source)
