"""Compile kernels in an isolated helper process.

The helper executable receives the target architecture as its only
argument, reads kernel source from stdin until end-of-input, and writes
the compiled code object to stdout. A non-zero exit status means stdout
holds a UTF-8 diagnostic instead of a binary.

Source is written and output drained at the same time through a
:class:`DuplexChannel`, so neither side can block on a full pipe buffer.
"""

from abc import ABC, abstractmethod
from contextlib import suppress
import os
from pathlib import Path
import queue
import selectors
import subprocess
import sysconfig
import threading
from time import monotonic
from typing import Iterable, Optional, Tuple, Union

from jitcache._utils import PACKAGE_DIR
from jitcache.config import CacheSettings


HELPER_EXE = "jitcache_rtc_helper.exe" if os.name == "nt" else (
    "jitcache_rtc_helper"
)
WRITE_CHUNK_SIZE = 4096
READ_CHUNK_SIZE = 65536
POLL_INTERVAL = 1.0


class CompileError(RuntimeError):
    """A helper process failed to produce a code object.

    Parameters
    ----------
    message
        Diagnostic text, usually the helper's captured output.
    returncode
        Exit status of the helper; negative for signal death, None if the
        helper never finished.
    """

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.returncode = returncode


class HelperNotFoundError(FileNotFoundError):
    """No compile helper executable could be located."""


def default_helper_dirs() -> list:
    """Directories searched for the helper, in order of preference."""
    dirs = [PACKAGE_DIR, PACKAGE_DIR.parent / "bin"]
    scripts = sysconfig.get_path("scripts")
    if scripts:
        dirs.append(Path(scripts))
    return dirs


def find_rtc_helper(
    override: Optional[Union[str, Path]] = None,
    search_dirs: Optional[Iterable[Union[str, Path]]] = None,
) -> Path:
    """Locate the compile helper executable.

    Parameters
    ----------
    override
        Explicit path, returned as-is without checking it exists.
    search_dirs
        Directories to search for ``HELPER_EXE``. Defaults to
        :func:`default_helper_dirs`.

    Raises
    ------
    HelperNotFoundError
        If no candidate directory contains the helper.
    """
    if override is not None:
        return Path(override)
    if search_dirs is None:
        search_dirs = default_helper_dirs()
    searched = []
    for directory in search_dirs:
        candidate = Path(directory) / HELPER_EXE
        if candidate.exists():
            return candidate
        searched.append(str(directory))
    raise HelperNotFoundError(
        f"unable to find rtc helper '{HELPER_EXE}' "
        f"(searched: {', '.join(searched)})"
    )


class DuplexChannel(ABC):
    """Byte streams to and from a child process.

    Implementations must never block in :meth:`write_chunk` or
    :meth:`read_chunk`; waiting happens only in :meth:`poll`.
    """

    @abstractmethod
    def poll(self, timeout: Optional[float]) -> Tuple[bool, bool]:
        """Wait until input can be written or output read.

        Returns
        -------
        tuple[bool, bool]
            ``(writable, readable)``; both False on timeout.
        """

    @abstractmethod
    def write_chunk(self, data: memoryview) -> int:
        """Write some of ``data``; return how many bytes were accepted."""

    @abstractmethod
    def read_chunk(self) -> Optional[bytes]:
        """Return available output, ``b""`` if none, None at end-of-stream."""

    @abstractmethod
    def close_input(self) -> None:
        """Signal end-of-input to the child."""

    @property
    @abstractmethod
    def input_closed(self) -> bool:
        """True once input is closed, by us or by the child hanging up."""

    @abstractmethod
    def close(self) -> None:
        """Release both streams."""


class PipeChannel(DuplexChannel):
    """Non-blocking pipes multiplexed with :mod:`selectors` (POSIX)."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._stdin = process.stdin
        self._stdout = process.stdout
        os.set_blocking(self._stdin.fileno(), False)
        os.set_blocking(self._stdout.fileno(), False)
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._stdin, selectors.EVENT_WRITE)
        self._selector.register(self._stdout, selectors.EVENT_READ)
        self._input_closed = False
        self._output_closed = False

    def poll(self, timeout):
        writable = readable = False
        for key, _ in self._selector.select(timeout):
            if key.fileobj is self._stdin:
                writable = True
            else:
                readable = True
        return writable, readable

    def write_chunk(self, data):
        if self._input_closed:
            return 0
        try:
            return os.write(self._stdin.fileno(), data)
        except BlockingIOError:
            return 0
        except BrokenPipeError:
            # child stopped reading; keep draining its output
            self.close_input()
            return 0

    def read_chunk(self):
        try:
            data = os.read(self._stdout.fileno(), READ_CHUNK_SIZE)
        except BlockingIOError:
            return b""
        if not data:
            return None
        return data

    @property
    def input_closed(self):
        return self._input_closed

    def close_input(self):
        if self._input_closed:
            return
        self._input_closed = True
        self._selector.unregister(self._stdin)
        with suppress(BrokenPipeError):
            self._stdin.close()

    def close(self):
        if self._output_closed:
            return
        self.close_input()
        self._output_closed = True
        self._selector.unregister(self._stdout)
        self._stdout.close()
        self._selector.close()


_EOF = object()
_EMPTY = object()


class ThreadedChannel(DuplexChannel):
    """Pipes serviced by one writer and one reader thread (Windows).

    Anonymous pipes on Windows cannot be polled, so blocking I/O runs on
    daemon threads and the calling thread exchanges chunks through queues.
    """

    def __init__(self, process: subprocess.Popen) -> None:
        self._stdin = process.stdin
        self._stdout = process.stdout
        self._outgoing: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._incoming: "queue.Queue[object]" = queue.Queue()
        self._pending = _EMPTY
        self._input_closed = False
        self._writer = threading.Thread(target=self._write_loop, daemon=True)
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._writer.start()
        self._reader.start()

    def _write_loop(self):
        try:
            while True:
                chunk = self._outgoing.get()
                if chunk is None:
                    break
                self._stdin.write(chunk)
                self._stdin.flush()
        except OSError:
            # child hung up its input
            self._input_closed = True
        finally:
            with suppress(OSError):
                self._stdin.close()

    def _read_loop(self):
        try:
            while True:
                data = self._stdout.read1(READ_CHUNK_SIZE)
                if not data:
                    break
                self._incoming.put(data)
        finally:
            self._incoming.put(_EOF)

    def poll(self, timeout):
        writable = not self._input_closed
        if self._pending is _EMPTY and not writable:
            try:
                self._pending = self._incoming.get(timeout=timeout)
            except queue.Empty:
                pass
        elif self._pending is _EMPTY:
            with suppress(queue.Empty):
                self._pending = self._incoming.get_nowait()
        return writable, self._pending is not _EMPTY

    def write_chunk(self, data):
        if self._input_closed:
            return 0
        self._outgoing.put(bytes(data))
        return len(data)

    def read_chunk(self):
        item, self._pending = self._pending, _EMPTY
        if item is _EMPTY:
            return b""
        if item is _EOF:
            return None
        return item

    @property
    def input_closed(self):
        return self._input_closed

    def close_input(self):
        if not self._input_closed:
            self._input_closed = True
            self._outgoing.put(None)

    def close(self):
        self.close_input()
        self._writer.join()
        self._stdout.close()


def open_channel(process: subprocess.Popen) -> DuplexChannel:
    """Return the duplex channel implementation for this platform."""
    if os.name == "nt":
        return ThreadedChannel(process)
    return PipeChannel(process)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - monotonic())


class SubprocessCompiler:
    """Compile kernel source by running a helper executable.

    Parameters
    ----------
    helper_path
        Explicit helper executable. None searches ``search_dirs``.
    search_dirs
        Directories searched for the helper when no explicit path is
        given. Defaults to :func:`default_helper_dirs`.
    timeout
        Seconds allowed per compile before the child is killed. None
        waits indefinitely.

    Notes
    -----
    Each call spawns its own process, so no lock is needed and calls may
    run concurrently from any number of threads.
    """

    def __init__(
        self,
        helper_path: Optional[Union[str, Path]] = None,
        search_dirs: Optional[Iterable[Union[str, Path]]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._override = helper_path
        self._search_dirs = (
            None if search_dirs is None else list(search_dirs)
        )
        self.timeout = timeout
        self._helper: Optional[Path] = None
        self._helper_error: Optional[HelperNotFoundError] = None

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "SubprocessCompiler":
        return cls(
            helper_path=settings.helper_path,
            timeout=settings.subprocess_timeout,
        )

    @property
    def helper_path(self) -> Path:
        """Helper executable, located on first use.

        Raises
        ------
        HelperNotFoundError
            If no helper can be found. A failed search is remembered and
            not repeated.
        """
        if self._helper_error is not None:
            raise self._helper_error
        if self._helper is None:
            try:
                self._helper = find_rtc_helper(
                    self._override, self._search_dirs
                )
            except HelperNotFoundError as e:
                self._helper_error = e
                raise
        return self._helper

    def compile(
        self, source_text: Union[str, bytes], target_arch: str
    ) -> bytes:
        """Compile ``source_text`` for ``target_arch`` in a child process.

        Returns
        -------
        bytes
            The code object written by the helper.

        Raises
        ------
        HelperNotFoundError
            If the helper executable cannot be located.
        CompileError
            If the child could not be spawned, exited non-zero, was killed
            by a signal, produced no output, or exceeded ``timeout``.
        """
        helper = self.helper_path
        if isinstance(source_text, str):
            source = source_text.encode("utf-8")
        else:
            source = bytes(source_text)

        try:
            process = subprocess.Popen(
                [str(helper), target_arch],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
            )
        except OSError as e:
            raise CompileError(
                f"failed to spawn child process {helper}: {e}"
            ) from e

        deadline = None if self.timeout is None else monotonic() + self.timeout
        channel = open_channel(process)
        try:
            output = self._exchange(channel, source, deadline)
            returncode = process.wait(timeout=_remaining(deadline))
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            raise CompileError(
                f"child process timed out after {self.timeout}s"
            ) from None
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            channel.close()

        if not output:
            raise CompileError(
                "child process failed to produce code", returncode
            )
        if returncode != 0:
            # output is a diagnostic message, not a code object
            raise CompileError(
                output.decode("utf-8", errors="replace"), returncode
            )
        return output

    def _exchange(
        self,
        channel: DuplexChannel,
        source: bytes,
        deadline: Optional[float],
    ) -> bytes:
        """Write all of ``source`` while draining output until EOF."""
        view = memoryview(source)
        offset = 0
        output = bytearray()
        if not view:
            channel.close_input()

        while True:
            timeout = POLL_INTERVAL
            if deadline is not None:
                timeout = min(timeout, _remaining(deadline))
            writable, readable = channel.poll(timeout)

            if writable and not channel.input_closed:
                end = offset + WRITE_CHUNK_SIZE
                offset += channel.write_chunk(view[offset:end])
                if offset >= len(view):
                    channel.close_input()

            if readable:
                chunk = channel.read_chunk()
                if chunk is None:
                    break
                output += chunk

            if deadline is not None and monotonic() >= deadline:
                raise subprocess.TimeoutExpired(
                    str(self._helper), self.timeout
                )
        return bytes(output)
