"""TI OAD GATT interface — wraps bleak for the identify and block characteristics."""

import asyncio
import logging
from typing import Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from config.constants import (
    OAD_BLOCK_CONTROL_LENGTH,
    OAD_IDENTIFY_REJECT_LENGTH,
    OAD_IMAGE_BLOCK_UUID,
    OAD_IMAGE_IDENTIFY_UUID,
)
from config.settings import BLESettings
from flash.events import BlockControl, HeaderAck, OADEvent
from flash.transport import TransportError

logger = logging.getLogger(__name__)

_CHAR_NAMES = {
    OAD_IMAGE_IDENTIFY_UUID: "identify",
    OAD_IMAGE_BLOCK_UUID: "block",
}


class OADDriverError(TransportError):
    """Raised when a BLE driver operation fails."""


def decode_identify_notification(data: bytes) -> Optional[OADEvent]:
    """Translate an identify notification; 8 bytes means header rejected."""
    if len(data) == OAD_IDENTIFY_REJECT_LENGTH:
        return HeaderAck(accepted=False)
    return None


def decode_block_notification(data: bytes) -> Optional[OADEvent]:
    """Translate a block notification into the requested block number."""
    if len(data) != OAD_BLOCK_CONTROL_LENGTH:
        return None
    return BlockControl(int.from_bytes(data, "little"))


class BleakOADDriver:
    """Manage the BLE link to a TI OAD target.

    Writes go to the OAD image identify and image block characteristics;
    notifications from both are translated into typed events and handed to
    ``on_event``.

    Usage::

        async with BleakOADDriver(BLESettings(address="AA:BB:...")) as driver:
            driver.on_event = controller.post
            await controller.run()
    """

    def __init__(self, settings: Optional[BLESettings] = None) -> None:
        self._settings = settings or BLESettings()
        self._client: Optional[BleakClient] = None

        # Callback — set by the caller (e.g. TransferController.post)
        self.on_event: Optional[Callable[[OADEvent], None]] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def settings(self) -> BLESettings:
        return self._settings

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self, settings: Optional[BLESettings] = None) -> None:
        """Connect to the target and subscribe to OAD notifications.

        Raises:
            OADDriverError: If the device is not found, the connection fails,
                or it is already open.
        """
        if self._client is not None:
            raise OADDriverError("Already connected — disconnect first")

        if settings is not None:
            self._settings = settings

        s = self._settings
        logger.info("Scanning for %s (%.1fs)", s.address, s.scan_timeout)
        device = await BleakScanner.find_device_by_address(
            s.address, timeout=s.scan_timeout,
        )
        if device is None:
            raise OADDriverError(f"Device {s.address} not found")

        logger.info("Connecting to %s (%s)", device.address, device.name)
        client = BleakClient(device, timeout=s.connect_timeout)
        try:
            await client.connect()
            await client.start_notify(OAD_IMAGE_IDENTIFY_UUID, self._on_identify_notify)
            await client.start_notify(OAD_IMAGE_BLOCK_UUID, self._on_block_notify)
        except (BleakError, asyncio.TimeoutError) as exc:
            logger.error("BLE connection failed: %s", exc)
            if client.is_connected:
                await client.disconnect()
            raise OADDriverError(f"Failed to connect: {exc}") from exc

        self._client = client
        logger.info("OAD target connected")

    async def disconnect(self) -> None:
        """Close the BLE connection.

        Safe to call even if not connected.
        """
        if self._client is None:
            return

        try:
            await self._client.disconnect()
            logger.info("OAD target disconnected")
        except BleakError as exc:
            logger.warning("Error during BLE disconnect: %s", exc)
        finally:
            self._client = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def write_identify(self, payload: bytes) -> None:
        await self._write(OAD_IMAGE_IDENTIFY_UUID, payload, response=True)

    async def write_block(self, payload: bytes) -> None:
        await self._write(OAD_IMAGE_BLOCK_UUID, payload, response=False)

    async def _write(self, uuid: str, payload: bytes, response: bool) -> None:
        if self._client is None or not self._client.is_connected:
            raise OADDriverError("Not connected")

        try:
            await self._client.write_gatt_char(uuid, payload, response=response)
        except BleakError as exc:
            logger.error("Write to %s failed: %s", _CHAR_NAMES[uuid], exc)
            raise OADDriverError(f"Write failed: {exc}") from exc

        logger.debug("TX [%s] %s", _CHAR_NAMES[uuid], payload.hex(" ").upper())

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _on_identify_notify(self, _sender, data: bytearray) -> None:
        logger.debug("RX [identify] %s", bytes(data).hex(" ").upper())
        event = decode_identify_notification(bytes(data))
        if event is None:
            logger.warning("Unexpected %d byte identify notification", len(data))
            return
        self._emit(event)

    def _on_block_notify(self, _sender, data: bytearray) -> None:
        logger.debug("RX [block] %s", bytes(data).hex(" ").upper())
        event = decode_block_notification(bytes(data))
        if event is None:
            logger.warning("Unexpected %d byte block notification", len(data))
            return
        self._emit(event)

    def _emit(self, event: OADEvent) -> None:
        if self.on_event:
            self.on_event(event)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "BleakOADDriver":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
