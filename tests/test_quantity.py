import pytest

from pvc_autoscaler.quantity import (
    GIBIBYTE,
    ceil_to_gibibyte,
    convert_percentage_to_bytes,
    format_storage,
    parse_storage,
)


def test_convert_percentage():
    assert convert_percentage_to_bytes("50%", 200, "80%") == 100


def test_convert_empty_uses_default():
    assert convert_percentage_to_bytes("", 400, "25%") == 100
    assert convert_percentage_to_bytes(None, 400, "25%") == 100


def test_convert_bounds_are_inclusive():
    assert convert_percentage_to_bytes("0%", 400, "25%") == 0
    assert convert_percentage_to_bytes("100%", 400, "25%") == 400
    assert convert_percentage_to_bytes("12.5%", 800, "25%") == 100


@pytest.mark.parametrize("value", ["150%", "-10%", "abc%", "50", "10Gi", "%"])
def test_convert_rejects_invalid_values(value):
    with pytest.raises(ValueError):
        convert_percentage_to_bytes(value, 400, "25%")


def test_parse_storage():
    assert parse_storage("10Gi") == 10 * GIBIBYTE
    assert parse_storage("1G") == 1_000_000_000
    assert parse_storage("1073741824") == GIBIBYTE
    assert parse_storage(42) == 42
    with pytest.raises(ValueError):
        parse_storage("ten gigs")


def test_format_storage():
    assert format_storage(12 * GIBIBYTE) == "12Gi"
    assert format_storage(1_000_000_000) == "1000000000"
    assert format_storage(0) == "0"


def test_ceil_to_gibibyte_keeps_aligned_sizes():
    requested = 10 * GIBIBYTE
    increase = convert_percentage_to_bytes("20%", requested, "20%")
    assert ceil_to_gibibyte(requested + increase) == 12 * GIBIBYTE


def test_ceil_to_gibibyte_rounds_up():
    assert ceil_to_gibibyte(int(12.3 * GIBIBYTE)) == 13 * GIBIBYTE
    assert ceil_to_gibibyte(1) == GIBIBYTE
