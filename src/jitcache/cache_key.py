"""Identity and payload types for cached kernel binaries."""

from hashlib import sha256
from typing import Any

from attrs import define, field, validators as val
from numpy import ndarray

from jitcache._utils import int_not_bool


SIGNATURE_SIZE = 32


def _to_bytes(value):
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def _signature_validator(instance, attribute, value):
    if not isinstance(value, bytes):
        raise TypeError(
            f"'{attribute.name}' must be bytes, got {type(value).__name__}"
        )
    if len(value) != SIGNATURE_SIZE:
        raise ValueError(
            f"'{attribute.name}' must be {SIGNATURE_SIZE} bytes, "
            f"got {len(value)}"
        )


def _serialise_input(value: Any) -> bytes:
    if value is None:
        return b"None"
    if isinstance(value, ndarray):
        # Hash array bytes for deterministic result, incorporating shape
        # and dtype
        header = f"ndarray:{value.dtype.str}:{value.shape}:".encode("utf-8")
        return header + sha256(value.tobytes()).digest()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return b"bytes:" + bytes(value)
    return str(value).encode("utf-8")


def hash_generator_inputs(*values: Any) -> bytes:
    """Compute a generator signature from every input affecting the source.

    Parameters
    ----------
    *values
        Problem parameters, generator version strings, compile flags and
        any other values the generated source depends on. Order matters.

    Returns
    -------
    bytes
        32-byte SHA256 digest suitable for ``CacheKey.generator_signature``.

    Notes
    -----
    ``None`` and numpy arrays are hashed deterministically; everything
    else is hashed through ``str()``, so inputs must have a stable string
    form.
    """
    digest = sha256()
    for value in values:
        part = _serialise_input(value)
        digest.update(len(part).to_bytes(8, "little"))
        digest.update(part)
    return digest.digest()


@define(frozen=True)
class CacheKey:
    """Composite identity of one compiled kernel variant.

    Parameters
    ----------
    kernel_name
        Identifier of the kernel variant.
    target_arch
        GPU architecture / ISA the binary targets.
    runtime_version
        Version of the runtime which produced the binary.
    generator_signature
        32-byte content hash of every input affecting the generated
        source.
    """

    kernel_name: str = field(validator=val.instance_of(str))
    target_arch: str = field(validator=val.instance_of(str))
    runtime_version: int = field(validator=int_not_bool)
    generator_signature: bytes = field(
        converter=_to_bytes,
        validator=_signature_validator,
        repr=lambda sig: sig.hex()[:16],
    )

    @classmethod
    def for_current_device(
        cls, kernel_name: str, generator_signature: bytes
    ) -> "CacheKey":
        """Build a key for the active CUDA device and runtime."""
        from jitcache import cuda_env

        return cls(
            kernel_name=kernel_name,
            target_arch=cuda_env.current_target_arch(),
            runtime_version=cuda_env.runtime_version(),
            generator_signature=generator_signature,
        )

    def as_row(self) -> tuple:
        """Return the key as a ``(name, arch, version, signature)`` row."""
        return (
            self.kernel_name,
            self.target_arch,
            self.runtime_version,
            self.generator_signature,
        )


@define(frozen=True)
class CodeObject:
    """A compiled binary and the time it was stored.

    The timestamp is informational only and is not part of identity.
    """

    code: bytes = field(converter=_to_bytes, validator=val.instance_of(bytes))
    timestamp: int = field(default=0, eq=False)

    def __len__(self) -> int:
        return len(self.code)
