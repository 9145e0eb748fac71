"""Shared attrs validators and small helpers used across jitcache."""
from os import PathLike
from pathlib import Path
from typing import Optional, Union

from attrs import validators


PACKAGE_DIR = Path(__file__).resolve().parent


def gttype_validator(dtype, min_):
    """Validate that a value is an instance of ``dtype`` and > ``min_``."""
    return validators.and_(
        validators.instance_of(dtype),
        validators.gt(min_),
    )


def opt_gttype_validator(dtype, min_):
    """Optional version of :func:`gttype_validator`, accepting ``None``."""
    return validators.optional(gttype_validator(dtype, min_))


def int_not_bool(instance, attribute, value):
    """Reject ``bool`` where an ``int`` field is expected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(
            f"'{attribute.name}' must be int, got {type(value).__name__}"
        )


def optional_path(value: Optional[Union[str, PathLike]]) -> Optional[Path]:
    """Convert a path-like to :class:`Path`, mapping ``None``/"" to None."""
    if value is None or value == "":
        return None
    return Path(value)
