"""Slice an assembled image into indexed OAD blocks."""

import logging
import struct
from typing import Optional

from config.constants import HAL_FLASH_WORD_SIZE, OAD_BLOCK_SIZE
from flash.image import FirmwareImage

logger = logging.getLogger(__name__)


class BlockStream:
    """Sequential cursor over the 18-byte blocks of a FirmwareImage.

    Each block is the little-endian 16-bit block number followed by 16
    image bytes.  Running off the end is the normal way a transfer finishes,
    so it is signalled by ``None`` rather than an exception.

    Usage::

        stream = BlockStream(image)
        while (block := stream.next_block()) is not None:
            transport.write_block(block)
    """

    def __init__(self, image: FirmwareImage) -> None:
        self._data = image.data
        self._total_blocks = image.length // (OAD_BLOCK_SIZE // HAL_FLASH_WORD_SIZE)
        self._block_index = 0

    @property
    def total_blocks(self) -> int:
        return self._total_blocks

    @property
    def block_index(self) -> int:
        """Number of the next block ``next_block`` returns."""
        return self._block_index

    @property
    def is_exhausted(self) -> bool:
        return self._block_index >= self._total_blocks

    @property
    def progress(self) -> float:
        """Fraction of blocks handed out, 1.0 for an empty image."""
        if self._total_blocks == 0:
            return 1.0
        return self._block_index / self._total_blocks

    def reset(self) -> None:
        self._block_index = 0

    def block(self, index: int) -> Optional[bytes]:
        """Return block *index*, or ``None`` if it is past the end."""
        if index < 0 or index >= self._total_blocks:
            return None

        start = index * OAD_BLOCK_SIZE
        chunk = self._data[start:start + OAD_BLOCK_SIZE]
        if len(chunk) != OAD_BLOCK_SIZE:
            logger.error("Block %d truncated (%d bytes)", index, len(chunk))
            return None

        return struct.pack("<H", index & 0xFFFF) + chunk

    def next_block(self) -> Optional[bytes]:
        """Return the block at the cursor and advance it."""
        block = self.block(self._block_index)
        if block is not None:
            self._block_index += 1
        return block
