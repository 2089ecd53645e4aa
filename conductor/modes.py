"""펌웨어 이미지 모드 이름을 장치 코드로 변환하는 테이블.

변환과 검증은 분리되어 있다. 변환 결과는 반드시 ``validate_*`` 로
확인한 뒤 사용해야 하며, 그래야 잘못된 hex 코드를 그대로 넘겨받은 경우도
걸러낼 수 있다.

SPI 모드::

    '0'/0/'fullbios'  full BIOS
    '1'/1/'bios'      BIOS
    '2'/2/'uefi'      UEFI
    '3'/3/'serdes'    serdes
    '4'/4/'post'      POST
    '5'/5/'me'        ME

BMC 모드::

    '0x142'/'ssp'              SSP
    '0x140'/'bmcapp'           BMC main app
    '0x144'/'bootblock'        bootblock
    '0x145'/'adaptivecooling'  adaptive cooling
    '0x5f'/'fullbmc'           full BMC image
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any

from .errors import ValidationError

SPI_MODE_MAPPING = MappingProxyType(
    {
        "fullbios": "0",
        "bios": "1",
        "uefi": "2",
        "serdes": "3",
        "post": "4",
        "me": "5",
    }
)

BMC_MODE_MAPPING = MappingProxyType(
    {
        "ssp": "0x142",
        "bmcapp": "0x140",
        "bootblock": "0x144",
        "adaptivecooling": "0x145",
        "fullbmc": "0x5f",
    }
)

SPI_VALID_CODES = frozenset(SPI_MODE_MAPPING.values())
BMC_VALID_CODES = frozenset(BMC_MODE_MAPPING.values())

_HEX_PREFIX = "0x"


def translate_spi_mode(mode: Any) -> str | None:
    """SPI 모드를 '0'~'5' 형태로 변환한다. 매핑에 없으면 None."""
    if isinstance(mode, bool):
        return None
    if isinstance(mode, int):
        return str(mode)
    if isinstance(mode, str):
        try:
            int(mode)
        except ValueError:
            return SPI_MODE_MAPPING.get(mode)
        return mode
    return None


def translate_bmc_mode(mode: Any) -> str | None:
    """BMC 모드를 hex 코드로 변환한다. 이미 0x 로 시작하면 그대로 둔다."""
    if isinstance(mode, str):
        if mode.startswith(_HEX_PREFIX):
            return mode
        return BMC_MODE_MAPPING.get(mode)
    return None


def validate_spi_mode(code: str | None, *, node_id: str | None = None) -> str:
    if code not in SPI_VALID_CODES:
        raise ValidationError(f"invalid spi image mode: {code!r}", node_id=node_id)
    return code


def validate_bmc_mode(code: str | None, *, node_id: str | None = None) -> str:
    if code not in BMC_VALID_CODES:
        raise ValidationError(f"invalid bmc image mode: {code!r}", node_id=node_id)
    return code
