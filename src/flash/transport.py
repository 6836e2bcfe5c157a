"""Transport boundary between the transfer controller and the BLE link."""

from typing import Protocol


class TransportError(Exception):
    """Raised when an OAD endpoint cannot be written."""


class OADTransport(Protocol):
    """The two OAD characteristics of a connected target.

    Target notifications travel the other way, as events posted to the
    controller (see ``flash.events``).
    """

    async def write_identify(self, payload: bytes) -> None:
        """Write the 16-byte image header, with response."""
        ...

    async def write_block(self, payload: bytes) -> None:
        """Write one 18-byte image block, without response."""
        ...
