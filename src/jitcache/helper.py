"""Child side of the subprocess compile protocol.

Installed as the ``jitcache_rtc_helper`` console script. The target
architecture is the only argument and kernel source is read from stdin.
The compiler is named by ``JITCACHE_HELPER_BACKEND`` as
``"package.module:callable"``; it is called as
``backend(source_text, target_arch)`` and must return bytes.

On success the code object is written to stdout and the exit status is 0.
On any failure the diagnostic is written to stdout instead and the exit
status is 1.
"""

import importlib
import os
import sys
from typing import Callable, Optional, Sequence

from jitcache.config import ENV_HELPER_BACKEND


def load_backend(backend_name: str) -> Callable[[str, str], bytes]:
    """Import the callable named by ``"module:attribute"``.

    Raises
    ------
    ValueError
        If ``backend_name`` is empty or has no ``:`` separator.
    """
    module_name, sep, attr_path = backend_name.partition(":")
    if not module_name or not sep or not attr_path:
        raise ValueError(
            f"{ENV_HELPER_BACKEND} must be 'module:callable', "
            f"got {backend_name!r}"
        )
    target = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        target = getattr(target, attr)
    return target


def main(argv: Optional[Sequence[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    out = sys.stdout.buffer
    try:
        if len(argv) != 1:
            raise ValueError("usage: jitcache_rtc_helper TARGET_ARCH")
        target_arch = argv[0]
        backend = load_backend(os.environ.get(ENV_HELPER_BACKEND, ""))
        source_text = sys.stdin.buffer.read().decode("utf-8")
        code = backend(source_text, target_arch)
        code = bytes(code)
    except Exception as e:
        out.write(str(e).encode("utf-8", errors="replace"))
        out.flush()
        return 1
    out.write(code)
    out.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
