"""Typed events delivered to the OAD transfer controller."""

from dataclasses import dataclass
from typing import Union

from config.constants import BlockControlValue


@dataclass(frozen=True)
class HeaderAck:
    """Target response on the identify characteristic."""
    accepted: bool


@dataclass(frozen=True)
class BlockControl:
    """16-bit value notified by the target on the block characteristic."""
    value: int

    @property
    def is_start(self) -> bool:
        return self.value == BlockControlValue.START

    @property
    def is_reject(self) -> bool:
        return self.value == BlockControlValue.REJECT


@dataclass(frozen=True)
class Tick:
    """Block timer tick; *generation* identifies the timer that fired."""
    generation: int


OADEvent = Union[HeaderAck, BlockControl, Tick]
