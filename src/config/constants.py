"""Intel-HEX record types, TI OAD protocol constants, and GATT UUIDs."""

from enum import IntEnum


# =============================================================================
# Intel HEX (https://en.wikipedia.org/wiki/Intel_HEX)
# =============================================================================

class RecordType(IntEnum):
    """Intel HEX record type field."""
    DATA = 0x00
    END_OF_FILE = 0x01
    EXTENDED_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXTENDED_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


IHEX_START_CODE = ":"

# Character offsets inside an Intel HEX line
IHEX_BYTE_COUNT_SLICE = slice(1, 3)
IHEX_ADDRESS_SLICE = slice(3, 7)
IHEX_RECORD_TYPE_SLICE = slice(7, 9)
IHEX_DATA_OFFSET = 9

# =============================================================================
# OAD image layout
# =============================================================================

class ImageType(IntEnum):
    """OAD image types understood by the target."""
    APP_STACK = 1


OAD_BLOCK_SIZE = 16           # Payload bytes per image block
HAL_FLASH_WORD_SIZE = 4       # Target flash word, unit of length/address
HAL_FLASH_PAGE_SIZE = 0x1000  # 4 KiB flash page, unit of the CRC walk

OAD_BLOCK_PAD_BYTE = 0xFF     # Erased-flash filler for gaps and short records

OAD_IMAGE_UID = b"\x45\x45\x45\x45"
OAD_CRC_SHADOW = 0xFFFF
OAD_CRC_SKIP_BYTES = 4        # crc + crc shadow at the start of the image

OAD_IDENTIFY_REJECT_LENGTH = 8
OAD_BLOCK_CONTROL_LENGTH = 2


class BlockControlValue(IntEnum):
    """Special 16-bit values notified by the target on the block endpoint."""
    START = 0x0000
    REJECT = 0xFFFF


# =============================================================================
# TI OAD GATT service
# =============================================================================

def oad_uuid(short: int) -> str:
    """Expand a 16-bit OAD id into the TI 128-bit base UUID."""
    return f"f000{short:04x}-0451-4000-b000-000000000000"


OAD_SERVICE_UUID = oad_uuid(0xFFC0)
OAD_IMAGE_IDENTIFY_UUID = oad_uuid(0xFFC1)
OAD_IMAGE_BLOCK_UUID = oad_uuid(0xFFC2)
