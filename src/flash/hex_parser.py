"""Intel HEX "fullflash" parser for TI OAD images.

Decodes Intel HEX records line by line and assembles the data records into a
single contiguous image: gaps between records are filled with erased flash
(``0xFF``) and records shorter than one OAD block are padded to 16 bytes, so
the image always slices into whole blocks.  The image load address is taken
from the first data record.

Parsing is lenient.  Lines that do not start with ``:``, have non-hex fields,
a truncated payload or an unknown record type are skipped; the record
checksum is not checked.

Usage::

    parser = FirmwareParser()
    image = parser.parse("fullflash.hex")
    print(f"Address: 0x{image.byte_address:08X}, Size: {len(image)}")
"""

import logging
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from config.constants import (
    HAL_FLASH_WORD_SIZE,
    IHEX_ADDRESS_SLICE,
    IHEX_BYTE_COUNT_SLICE,
    IHEX_DATA_OFFSET,
    IHEX_RECORD_TYPE_SLICE,
    IHEX_START_CODE,
    OAD_BLOCK_PAD_BYTE,
    OAD_BLOCK_SIZE,
    RecordType,
)
from config.settings import ImageSettings
from flash.image import FirmwareImage

logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset(string.hexdigits)


class FirmwareParseError(Exception):
    """Raised when a firmware file cannot be read."""


@dataclass
class HexRecord:
    """One decoded Intel HEX record."""
    byte_count: int
    address: int
    record_type: RecordType
    data: bytes

    @property
    def upper_address(self) -> Optional[int]:
        """Upper 16 address bits carried by an Extended Linear Address record."""
        if len(self.data) < 2:
            return None
        return int.from_bytes(self.data[:2], "big")


def _parse_hex_field(text: str) -> int:
    if not text or not _HEX_DIGITS.issuperset(text):
        raise ValueError(f"not a hex field: {text!r}")
    return int(text, 16)


def parse_record(line: str) -> Optional[HexRecord]:
    """Decode one Intel HEX line.

    Returns:
        The decoded record, or ``None`` if the line is not a record or
        any of the used fields is malformed.
    """
    line = line.rstrip()
    if not line.startswith(IHEX_START_CODE):
        return None

    try:
        byte_count = _parse_hex_field(line[IHEX_BYTE_COUNT_SLICE])
        address = _parse_hex_field(line[IHEX_ADDRESS_SLICE])
        record_type = RecordType(_parse_hex_field(line[IHEX_RECORD_TYPE_SLICE]))

        payload = line[IHEX_DATA_OFFSET:IHEX_DATA_OFFSET + byte_count * 2]
        if len(payload) != byte_count * 2:
            raise ValueError(f"truncated payload, expected {byte_count} bytes")
        data = bytes(
            _parse_hex_field(payload[i:i + 2]) for i in range(0, len(payload), 2)
        )
    except ValueError as exc:
        logger.debug("Skipping record %r: %s", line, exc)
        return None

    return HexRecord(byte_count, address, record_type, data)


def iter_records(text: str) -> Iterator[HexRecord]:
    """Yield the records of a hex text, skipping everything unparseable."""
    for line in text.splitlines():
        if not line:
            continue
        record = parse_record(line)
        if record is not None:
            yield record


class FlashImageAssembler:
    """Concatenate data records into one padded, contiguous image.

    The buffer is append-only: records are never reordered and the image
    never shrinks.  A data record at a higher address than the end of the
    previous one is preceded by ``0xFF`` filler up to its address.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._current_base = 0
        self._current_address: Optional[int] = None
        self._load_address: Optional[int] = None

    @property
    def load_address(self) -> Optional[int]:
        """Word address of the first data record, ``None`` before one is seen."""
        return self._load_address

    @property
    def size(self) -> int:
        return len(self._buffer)

    def feed(self, record: HexRecord) -> None:
        """Apply one record to the image."""
        if record.record_type == RecordType.DATA:
            self._add_data(record)
        elif record.record_type == RecordType.EXTENDED_LINEAR_ADDRESS:
            upper = record.upper_address
            if upper is None:
                logger.debug("Skipping short extended linear address record")
                return
            self._current_base = upper << 16
            logger.debug("Base address 0x%08X", self._current_base)
        elif record.record_type == RecordType.END_OF_FILE:
            logger.debug("End of file record")
        else:
            logger.debug("Ignoring unsupported %s record", record.record_type.name)

    def feed_text(self, text: str) -> None:
        for record in iter_records(text):
            self.feed(record)

    def _add_data(self, record: HexRecord) -> None:
        address = record.address + self._current_base

        if self._current_address is None:
            # The target programs the image at this address after reboot
            self._load_address = address // HAL_FLASH_WORD_SIZE
            logger.debug("Image starts at 0x%08X", address)
        elif address > self._current_address:
            gap = address - self._current_address
            self._buffer += bytes([OAD_BLOCK_PAD_BYTE]) * gap
            logger.debug(
                "Padded %d byte gap 0x%08X..0x%08X",
                gap, self._current_address, address,
            )
        elif address < self._current_address:
            logger.warning(
                "Record at 0x%08X overlaps previous data ending at 0x%08X",
                address, self._current_address,
            )

        self._buffer += record.data
        appended = len(record.data)

        if appended < OAD_BLOCK_SIZE:
            pad = OAD_BLOCK_SIZE - appended
            self._buffer += bytes([OAD_BLOCK_PAD_BYTE]) * pad
            appended += pad

        self._current_address = address + appended

    def result(self) -> tuple[bytes, int]:
        """Return the assembled image bytes and its load (word) address."""
        data = bytes(self._buffer)
        remainder = len(data) % OAD_BLOCK_SIZE
        if remainder:
            # Unaligned gaps or long records leave a partial last block
            data += bytes([OAD_BLOCK_PAD_BYTE]) * (OAD_BLOCK_SIZE - remainder)
        return data, self._load_address or 0


class FirmwareParser:
    """Parse fullflash Intel HEX text into FirmwareImage objects."""

    def parse_text(
        self,
        text: str,
        settings: Optional[ImageSettings] = None,
        source: str = "<text>",
    ) -> FirmwareImage:
        """Assemble an image from Intel HEX text.

        Never fails on malformed lines; an input without data records
        yields an empty image.
        """
        assembler = FlashImageAssembler()
        assembler.feed_text(text)
        data, load_address = assembler.result()

        image = FirmwareImage(data, load_address, settings, source=source)
        logger.info(
            "Parsed %s: %d bytes, %d words, address 0x%08X, CRC 0x%04X",
            source, len(image), image.length, image.byte_address, image.crc,
        )
        return image

    def parse(
        self,
        file_path: str,
        settings: Optional[ImageSettings] = None,
    ) -> FirmwareImage:
        """Parse a fullflash ``.hex`` file.

        Raises:
            FirmwareParseError: If the file cannot be read.
        """
        path = Path(file_path)
        if not path.exists():
            raise FirmwareParseError(f"File not found: {file_path}")

        logger.info("Parsing firmware file: %s", path.name)
        try:
            content = path.read_text(encoding="ascii", errors="replace")
        except OSError as exc:
            raise FirmwareParseError(f"Failed to read {path.name}: {exc}") from exc

        return self.parse_text(content, settings, source=path.name)
