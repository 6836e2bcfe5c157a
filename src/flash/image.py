"""Assembled OAD firmware image and its 16-byte identify header.

Usage::

    image = FirmwareParser().parse("fullflash.hex")
    print(image.header_summary())
    transport.write_identify(image.identify_payload())
"""

import logging
import struct
from typing import Optional

import bincopy

from config.constants import (
    HAL_FLASH_WORD_SIZE,
    OAD_BLOCK_PAD_BYTE,
    OAD_CRC_SHADOW,
    OAD_IMAGE_UID,
    ImageType,
)
from config.settings import ImageSettings
from flash.crc import calc_image_crc

logger = logging.getLogger(__name__)

# crc, crc shadow, version, length, uid, address, image type, reserved
_IDENTIFY_FORMAT = "<HHHH4sHBB"


class FirmwareImage:
    """A contiguous, padded flash image ready for OAD transfer.

    The CRC is computed once at construction; the image bytes and all header
    fields are fixed for the lifetime of the object.

    Attributes:
        source:     Where the image came from (file name or ``"<text>"``).
        version:    Image version reported in the header.
        image_type: OAD image type (app + stack only).
        uid:        4-byte image user id.
        crc_shadow: Header CRC shadow, erased value until the target
                    verifies the image.
    """

    def __init__(
        self,
        data: bytes,
        load_address: int,
        settings: Optional[ImageSettings] = None,
        source: str = "<text>",
    ) -> None:
        settings = settings or ImageSettings()
        self.source = source
        self._data = bytes(data)
        self._load_address = load_address

        self.version = settings.version
        self.image_type = ImageType(settings.image_type)
        self.uid = OAD_IMAGE_UID
        self.crc_shadow = OAD_CRC_SHADOW

        self._length = len(self._data) // HAL_FLASH_WORD_SIZE
        self._crc = calc_image_crc(self._data)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def load_address(self) -> int:
        """Word address (byte address / 4) of the first data record."""
        return self._load_address

    @property
    def length(self) -> int:
        """Image length in 4-byte flash words."""
        return self._length

    @property
    def crc(self) -> int:
        return self._crc

    @property
    def byte_address(self) -> int:
        return self._load_address * HAL_FLASH_WORD_SIZE

    def __len__(self) -> int:
        return len(self._data)

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def identify_payload(self) -> bytes:
        """Serialize the image header for the identify characteristic."""
        return struct.pack(
            _IDENTIFY_FORMAT,
            self._crc & 0xFFFF,
            self.crc_shadow & 0xFFFF,
            self.version & 0xFFFF,
            self._length & 0xFFFF,
            self.uid,
            self._load_address & 0xFFFF,
            int(self.image_type) & 0xFF,
            OAD_BLOCK_PAD_BYTE,
        )

    def header_summary(self) -> str:
        """Human-readable dump of the header fields."""
        return "\n".join([
            f"ImgHdr.len     = {self._length}",
            f"ImgHdr.ver     = {self.version}",
            f"ImgHdr.uid     = 0x{self.uid.hex()}",
            f"ImgHdr.addr    = 0x{self._load_address & 0xFFFF:04x}",
            f"ImgHdr.imgType = {self.image_type.name} ({int(self.image_type)})",
            f"ImgHdr.crc0    = 0x{self._crc & 0xFFFF:04x}",
            f"Identify       = {self.identify_payload().hex(' ')}",
        ])

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_binfile(self) -> bincopy.BinFile:
        """Return the image as a ``bincopy.BinFile`` at its flash address.

        Used to write the assembled image back out as Intel HEX or raw
        binary for inspection.
        """
        binfile = bincopy.BinFile()
        if self._data:
            binfile.add_binary(self._data, address=self.byte_address)
        logger.debug(
            "Exported %d bytes at 0x%08X", len(self._data), self.byte_address,
        )
        return binfile

    def __repr__(self) -> str:
        return (
            f"FirmwareImage(source={self.source!r}, "
            f"addr=0x{self.byte_address:08X}, "
            f"size={len(self._data)}, crc=0x{self._crc:04X})"
        )
