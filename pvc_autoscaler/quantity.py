"""Storage quantity helpers.

Quantities arrive as Kubernetes strings ("10Gi", "500M", "1073741824") and are
handled internally as integer byte counts.
"""

import math

from kubernetes.utils.quantity import parse_quantity

GIBIBYTE = 1 << 30


def parse_storage(quantity: str | int) -> int:
    """Parse a storage quantity into bytes, rounding fractional bytes up."""
    if isinstance(quantity, int):
        return quantity
    return int(math.ceil(parse_quantity(quantity)))


def format_storage(size_bytes: int) -> str:
    """Format bytes as a quantity string, using Gi when the size is aligned."""
    if size_bytes > 0 and size_bytes % GIBIBYTE == 0:
        return f"{size_bytes // GIBIBYTE}Gi"
    return str(int(size_bytes))


def ceil_to_gibibyte(size_bytes: int) -> int:
    """Round up to the next multiple of 2^30 unless already a multiple."""
    return -(-size_bytes // GIBIBYTE) * GIBIBYTE


def convert_percentage_to_bytes(
    value: str | None, capacity: int, default_value: str
) -> int:
    """Return `value` percent of `capacity` in bytes.

    An empty value falls back to `default_value`. The value must look like
    "<number>%" with the number between 0 and 100, otherwise ValueError.
    """
    if not value:
        value = default_value
    value = value.strip()
    if not value.endswith("%"):
        raise ValueError(f"annotation value {value!r} should be a percentage")

    try:
        perc = float(value[:-1])
    except ValueError as e:
        raise ValueError(f"annotation value {value!r} is not a number") from e
    if not 0 <= perc <= 100:
        raise ValueError(f"annotation value {value!r} should be between 0% and 100%")

    return int(capacity * perc / 100.0)
