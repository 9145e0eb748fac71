from pathlib import Path
import stat
import sys
import textwrap

import pytest

from jitcache.cache import KernelCache
from jitcache.cache_key import CacheKey, hash_generator_inputs
from jitcache.config import CacheSettings
from jitcache.time_logger import TimeLogger


# --------------------------------------------------------------------------- #
#                            Device-dependent tests                           #
# --------------------------------------------------------------------------- #
def _cuda_device_present():
    from jitcache.cuda_env import is_cudasim_enabled
    from numba import cuda

    if is_cudasim_enabled():
        return False
    try:
        return cuda.is_available()
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):
    if _cuda_device_present():
        return
    skip_cuda = pytest.mark.skip(reason="requires a CUDA device")
    for item in items:
        if "requires_cuda" in item.keywords:
            item.add_marker(skip_cuda)


# --------------------------------------------------------------------------- #
#                                  Keys                                       #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="session")
def signature():
    return hash_generator_inputs("kernel_a", 64, "float32")


@pytest.fixture(scope="function")
def make_key(signature):
    """Factory for keys which differ from the default in selected fields."""

    def _make_key(
        kernel_name="kernel_a",
        target_arch="gfx900",
        runtime_version=50000000,
        generator_signature=None,
    ):
        if generator_signature is None:
            generator_signature = signature
        return CacheKey(
            kernel_name, target_arch, runtime_version, generator_signature
        )

    return _make_key


@pytest.fixture(scope="function")
def key(make_key):
    return make_key()


# --------------------------------------------------------------------------- #
#                            Cache configuration                              #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="function")
def user_db(tmp_path) -> Path:
    return tmp_path / "user" / "kernel_cache.db"


@pytest.fixture(scope="function")
def sys_db(tmp_path) -> Path:
    return tmp_path / "sys" / "kernel_cache.db"


@pytest.fixture(scope="function")
def cache_settings(user_db, sys_db):
    user_db.parent.mkdir(parents=True, exist_ok=True)
    sys_db.parent.mkdir(parents=True, exist_ok=True)
    return CacheSettings(
        sys_cache_path=sys_db,
        user_cache_path=user_db,
    )


@pytest.fixture(scope="function")
def kernel_cache(cache_settings):
    cache = KernelCache(cache_settings)
    yield cache
    cache.close()


@pytest.fixture(scope="function")
def quiet_logger():
    return TimeLogger(verbosity=None)


# --------------------------------------------------------------------------- #
#                              Helper scripts                                 #
# --------------------------------------------------------------------------- #
@pytest.fixture(scope="function")
def write_helper(tmp_path):
    """Write an executable Python helper script and return its path.

    The body runs with ``sys`` imported, ``arch`` set to the first
    argument and ``out`` bound to the binary stdout.
    """
    counter = {"n": 0}

    def _write_helper(body: str, name: str = None) -> Path:
        counter["n"] += 1
        if name is None:
            name = f"helper_{counter['n']}"
        path = tmp_path / name
        script = (
            f"#!{sys.executable}\n"
            "import sys\n"
            "arch = sys.argv[1]\n"
            "out = sys.stdout.buffer\n"
            + textwrap.dedent(body)
        )
        path.write_text(script)
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return path

    return _write_helper


# Compile by uppercasing the source and tagging it with the target arch
ECHO_HELPER = """
source = sys.stdin.buffer.read()
out.write(arch.encode() + b":" + source.upper())
"""


def _echo_compile(source_text, target_arch):
    return target_arch.encode() + b":" + source_text.encode().upper()


@pytest.fixture(scope="function")
def echo_backend():
    """In-process twin of ECHO_HELPER."""
    return _echo_compile


@pytest.fixture(scope="function")
def echo_helper(write_helper):
    return write_helper(ECHO_HELPER, name="echo_helper")
