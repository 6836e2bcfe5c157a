"""Default image, transfer and BLE configuration settings."""

from dataclasses import dataclass
from typing import Optional

from config.constants import ImageType


@dataclass
class ImageSettings:
    """Header metadata written into the OAD identify payload."""
    version: int = 0
    image_type: ImageType = ImageType.APP_STACK


@dataclass
class TransferSettings:
    """Block transfer pacing.

    A CC2640 fullflash image (~200 KiB, app + stack) transfers in about a
    minute with the defaults, roughly 3 KiB/s.
    """
    # Blocks written per timer tick, without waiting for a response
    blocks_per_tick: int = 4
    # Timer interval (seconds)
    tick_interval: float = 0.03
    # Max time to wait for the target to request block 0 after the
    # identify write (seconds); None waits forever
    ack_timeout: Optional[float] = None


@dataclass
class BLESettings:
    """BLE connection settings."""
    address: str = ""
    # Connect timeout (seconds)
    connect_timeout: float = 10.0
    # Scan timeout used when resolving the address (seconds)
    scan_timeout: float = 5.0
