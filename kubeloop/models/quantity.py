"""Kubernetes resource quantity parsing.

CPU is normalised to millicores (``"500m"`` -> 500, ``"1.5"`` -> 1500).
Memory and storage are normalised to bytes (``"128Mi"``, ``"1G"``, ``"1e3"``).
"""

from __future__ import annotations

import math
import re
from typing import Final

from kubeloop.errors import ValidationError

_BINARY_SUFFIXES: Final[dict[str, int]] = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

_DECIMAL_SUFFIXES: Final[dict[str, float]] = {
    "n": 1e-9,
    "u": 1e-6,
    "m": 1e-3,
    "": 1.0,
    "k": 1e3,
    "K": 1e3,
    "M": 1e6,
    "G": 1e9,
    "T": 1e12,
    "P": 1e15,
    "E": 1e18,
}

_QUANTITY_RE = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)([a-zA-Z]*)$")


def parse_quantity(value: str | int | float) -> float:
    """Parse a quantity into its base unit as a float.

    Raises ValidationError for unparseable or negative values.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid quantity: {value!r}")
    if isinstance(value, int | float):
        number = float(value)
    else:
        match = _QUANTITY_RE.match(str(value).strip())
        if match is None:
            raise ValidationError(f"Invalid quantity: {value!r}")
        digits, suffix = match.groups()
        try:
            base = float(digits)
        except ValueError as exc:
            raise ValidationError(f"Invalid quantity: {value!r}") from exc
        if suffix in _BINARY_SUFFIXES:
            number = base * _BINARY_SUFFIXES[suffix]
        elif suffix in _DECIMAL_SUFFIXES:
            number = base * _DECIMAL_SUFFIXES[suffix]
        else:
            raise ValidationError(f"Invalid quantity suffix: {value!r}")
    if number < 0 or math.isnan(number):
        raise ValidationError(f"Quantity must be non-negative: {value!r}")
    return number


def parse_cpu(value: str | int | float) -> int:
    """Return CPU in millicores, rounding fractional millicores up."""
    return int(math.ceil(parse_quantity(value) * 1000 - 1e-9))


def parse_bytes(value: str | int | float) -> int:
    """Return memory or storage in bytes, rounding up."""
    return int(math.ceil(parse_quantity(value) - 1e-9))
