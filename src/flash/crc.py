"""Image CRC as verified by the TI OAD target.

The target walks its flash page by page, skipping the CRC and CRC shadow
words at the start of the image, and feeds two zero bytes at the end of the
image.  The per-byte update is a bit-serial CRC-16/CCITT (poly 0x1021) that
shifts the data bits into the low end of the register, so with the two
trailing zero bytes the result equals CRC-16/XMODEM over the hashed bytes.

Usage::

    crc = calc_image_crc(image_bytes)
"""

import logging

from config.constants import (
    HAL_FLASH_PAGE_SIZE,
    HAL_FLASH_WORD_SIZE,
    OAD_CRC_SKIP_BYTES,
)

logger = logging.getLogger(__name__)

CRC16_POLY = 0x1021


def crc16(crc: int, value: int) -> int:
    """Fold one byte into a running 16-bit CRC, MSB first."""
    for _ in range(8):
        msb = crc & 0x8000
        crc = (crc << 1) & 0xFFFF
        if value & 0x80:
            crc |= 0x0001
        if msb:
            crc ^= CRC16_POLY
        value <<= 1
    return crc


def calc_image_crc(data: bytes) -> int:
    """Compute the OAD image CRC over *data*.

    The walk ends at the image length rounded down to whole flash words;
    any trailing partial word is not covered, the same as on the target.

    Args:
        data: The assembled image, starting at flash page 0 of the image.

    Returns:
        The 16-bit CRC written into the image header.
    """
    length_words = len(data) // HAL_FLASH_WORD_SIZE
    words_per_page = HAL_FLASH_PAGE_SIZE // HAL_FLASH_WORD_SIZE
    page_end = length_words // words_per_page
    offset_end = (length_words % words_per_page) * HAL_FLASH_WORD_SIZE
    end = page_end * HAL_FLASH_PAGE_SIZE + offset_end

    crc = 0
    for page_start in range(0, end, HAL_FLASH_PAGE_SIZE):
        page = data[page_start:min(page_start + HAL_FLASH_PAGE_SIZE, end)]
        if page_start == 0:
            # Skip the CRC and shadow
            page = page[OAD_CRC_SKIP_BYTES:]
        for value in page:
            crc = crc16(crc, value)

    crc = crc16(crc, 0x00)
    crc = crc16(crc, 0x00)

    logger.debug(
        "Image CRC 0x%04X over %d bytes (%d page(s), end offset 0x%03X)",
        crc, end, page_end + (1 if offset_end else 0), offset_end,
    )
    return crc
