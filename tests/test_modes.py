from __future__ import annotations

import pytest

from conductor.errors import ValidationError
from conductor.modes import (
    BMC_MODE_MAPPING,
    BMC_VALID_CODES,
    SPI_MODE_MAPPING,
    translate_bmc_mode,
    translate_spi_mode,
    validate_bmc_mode,
    validate_spi_mode,
)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        ("fullbios", "0"),
        ("bios", "1"),
        ("uefi", "2"),
        ("serdes", "3"),
        ("post", "4"),
        ("me", "5"),
        (0, "0"),
        (3, "3"),
        (5, "5"),
        ("4", "4"),
    ],
)
def test_translate_spi_mode(mode, expected) -> None:
    assert validate_spi_mode(translate_spi_mode(mode)) == expected


def test_translate_spi_mode_leaves_unknown_names_unmapped() -> None:
    assert translate_spi_mode("flashall") is None


def test_out_of_range_spi_number_is_rejected_by_validation() -> None:
    assert translate_spi_mode(9) == "9"
    with pytest.raises(ValidationError):
        validate_spi_mode(translate_spi_mode(9))


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        ("ssp", "0x142"),
        ("bmcapp", "0x140"),
        ("bootblock", "0x144"),
        ("adaptivecooling", "0x145"),
        ("fullbmc", "0x5f"),
        ("0x140", "0x140"),
    ],
)
def test_translate_bmc_mode(mode, expected) -> None:
    assert validate_bmc_mode(translate_bmc_mode(mode)) == expected


def test_translate_bmc_mode_passes_unknown_hex_through() -> None:
    assert translate_bmc_mode("0x999") == "0x999"
    with pytest.raises(ValidationError, match="invalid bmc image mode"):
        validate_bmc_mode(translate_bmc_mode("0x999"))


def test_translate_bmc_mode_unknown_name() -> None:
    assert translate_bmc_mode("bios") is None
    with pytest.raises(ValidationError):
        validate_bmc_mode(None)


def test_mappings_are_read_only() -> None:
    with pytest.raises(TypeError):
        SPI_MODE_MAPPING["bios"] = "9"  # type: ignore[index]
    with pytest.raises(TypeError):
        BMC_MODE_MAPPING["ssp"] = "0x1"  # type: ignore[index]
    assert BMC_VALID_CODES == {"0x142", "0x140", "0x144", "0x145", "0x5f"}
