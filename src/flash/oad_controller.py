"""OAD transfer controller — drives the identify / block-transfer state machine.

The controller writes the image header to the identify characteristic and
waits for the target to request block 0.  From then on a periodic timer
pushes a burst of blocks on every tick, without per-block acknowledgement,
until the image is exhausted.  The target steers the transfer through
notifications: block 0 (re)starts streaming from the beginning, 0xFFFF
rejects the transfer, and an 8-byte identify notification rejects the
header.

Timer ticks and target notifications are posted as typed events into one
queue that ``run()`` consumes one at a time, so they never interleave on the
block cursor.  Progress and state changes are delivered through callbacks
that the caller provides.

Usage::

    controller = TransferController(image, driver)
    driver.on_event = controller.post
    controller.on_progress = lambda pct, msg: print(f"{pct}% {msg}")
    state = await controller.run()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from config.settings import TransferSettings
from flash.blocks import BlockStream
from flash.events import BlockControl, HeaderAck, OADEvent, Tick
from flash.image import FirmwareImage
from flash.timer import PeriodicTask
from flash.transport import OADTransport, TransportError

logger = logging.getLogger(__name__)


# =============================================================================
# Transfer state and exceptions
# =============================================================================


class TransferState(Enum):
    """Current state of an OAD transfer."""
    IDLE = auto()
    HEADER_SENT = auto()
    STREAMING = auto()
    # Terminal
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()


class FailureReason(Enum):
    """Why a transfer ended in ``TransferState.FAILED``."""
    HEADER_REJECTED = auto()
    BLOCK_REJECTED = auto()
    PREMATURE_EXHAUSTION = auto()
    TRANSPORT_UNAVAILABLE = auto()
    ACK_TIMEOUT = auto()


_FAILURE_DESCRIPTIONS = {
    FailureReason.HEADER_REJECTED:       "Invalid firmware image",
    FailureReason.BLOCK_REJECTED:        "Block error",
    FailureReason.PREMATURE_EXHAUSTION:  "Unable to get next block from firmware image",
    FailureReason.TRANSPORT_UNAVAILABLE: "OAD characteristic unavailable",
    FailureReason.ACK_TIMEOUT:           "Target did not request the first block",
}

TERMINAL_STATES = frozenset({
    TransferState.COMPLETED,
    TransferState.FAILED,
    TransferState.CANCELLED,
})

_TRANSITIONS = {
    TransferState.IDLE: {
        TransferState.HEADER_SENT,
        TransferState.CANCELLED,
    },
    TransferState.HEADER_SENT: {
        TransferState.STREAMING,
        TransferState.FAILED,
        TransferState.CANCELLED,
    },
    # STREAMING -> STREAMING is a target-requested restart
    TransferState.STREAMING: {
        TransferState.STREAMING,
        TransferState.COMPLETED,
        TransferState.FAILED,
        TransferState.CANCELLED,
    },
    TransferState.COMPLETED: set(),
    TransferState.FAILED: set(),
    TransferState.CANCELLED: set(),
}


class OADTransferError(Exception):
    """Raised when a transfer fails."""

    def __init__(self, message: str, reason: Optional[FailureReason] = None) -> None:
        super().__init__(message)
        self.reason = reason


class InvalidTransitionError(OADTransferError):
    """Raised on a state change the transfer state machine does not allow."""


# Wakes run() after cancel() without carrying an event
_WAKE = object()


@dataclass
class TransferProgress:
    """Snapshot of transfer progress."""
    blocks_sent: int
    total_blocks: int
    elapsed: float

    @property
    def fraction(self) -> float:
        if self.total_blocks == 0:
            return 1.0
        return self.blocks_sent / self.total_blocks

    @property
    def estimated_total(self) -> Optional[float]:
        """Estimated total transfer time in seconds, None until a block is out."""
        if self.blocks_sent == 0 or self.total_blocks == 0:
            return None
        return self.elapsed / self.fraction


class TransferController:
    """Stream one FirmwareImage to an OAD target.

    Args:
        image:     The assembled firmware image.
        transport: Writer for the identify and block characteristics.
        settings:  Block pacing and timeout parameters.
    """

    def __init__(
        self,
        image: FirmwareImage,
        transport: OADTransport,
        settings: Optional[TransferSettings] = None,
    ) -> None:
        self._image = image
        self._transport = transport
        self._settings = settings or TransferSettings()

        self._stream = BlockStream(image)
        self._state = TransferState.IDLE
        self._failure_reason: Optional[FailureReason] = None
        self._start_time: Optional[float] = None

        self._timer: Optional[PeriodicTask] = None
        self._timer_generation = 0

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Callbacks — set by the caller
        self.on_progress: Optional[Callable[[int, str], None]] = None
        self.on_state_changed: Optional[Callable[[TransferState], None]] = None
        self.on_log: Optional[Callable[[str], None]] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransferState:
        return self._state

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return self._failure_reason

    @property
    def image(self) -> FirmwareImage:
        return self._image

    @property
    def block_stream(self) -> BlockStream:
        return self._stream

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and self._timer.running

    def progress(self) -> TransferProgress:
        elapsed = 0.0
        if self._start_time is not None:
            elapsed = time.monotonic() - self._start_time
        return TransferProgress(
            self._stream.block_index, self._stream.total_blocks, elapsed,
        )

    # ------------------------------------------------------------------
    # State / progress / logging helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: TransferState) -> None:
        if state not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Invalid transition {self._state.name} -> {state.name}"
            )
        logger.debug("State %s -> %s", self._state.name, state.name)
        self._state = state
        if self.on_state_changed:
            self.on_state_changed(state)

    def _report_progress(self) -> None:
        progress = self.progress()
        percent = int(progress.fraction * 100)
        estimate = progress.estimated_total
        estimate_str = f"{int(estimate)}sec" if estimate is not None else "..."
        message = (
            f"{progress.blocks_sent}/{progress.total_blocks} blocks, "
            f"{int(progress.elapsed)} of {estimate_str}"
        )
        logger.debug("Transfer %d%%: %s", percent, message)
        if self.on_progress:
            self.on_progress(percent, message)

    def _log(self, message: str) -> None:
        logger.info("OAD: %s", message)
        if self.on_log:
            self.on_log(message)

    # ------------------------------------------------------------------
    # Event queue
    # ------------------------------------------------------------------

    def _enqueue(self, item: object) -> None:
        if self._loop is None:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def post(self, event: OADEvent) -> None:
        """Deliver a target event.  Safe to call from any thread."""
        if self._state in TERMINAL_STATES:
            logger.debug("Dropping %r after transfer end", event)
            return
        self._enqueue(event)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _start_timer(self) -> None:
        self._stop_timer()
        self._timer_generation += 1
        generation = self._timer_generation
        self._timer = PeriodicTask(
            self._settings.tick_interval,
            lambda: self._queue.put_nowait(Tick(generation)),
        )
        self._timer.start()

    def _stop_timer(self) -> bool:
        """Stop the block timer.  Returns False if it was already stopped."""
        if self._timer is None:
            return False
        self._timer.cancel()
        self._timer = None
        return True

    # ------------------------------------------------------------------
    # Main execution
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Write the image header to the identify characteristic.

        Raises:
            InvalidTransitionError: If the transfer was already started.
        """
        self._loop = asyncio.get_running_loop()
        self._set_state(TransferState.HEADER_SENT)
        self._stream.reset()
        self._failure_reason = None
        self._start_time = time.monotonic()

        for line in self._image.header_summary().splitlines():
            logger.info("%s", line)
        self._log(
            f"Sending image header ({self._stream.total_blocks} blocks, "
            f"{len(self._image)} bytes)"
        )

        try:
            await self._transport.write_identify(self._image.identify_payload())
        except TransportError as exc:
            self._fail(FailureReason.TRANSPORT_UNAVAILABLE, str(exc))
            return
        if self._state != TransferState.HEADER_SENT:
            # Cancelled while the header write was in flight
            return
        self._report_progress()

    async def run(self) -> TransferState:
        """Run the transfer until it completes, fails or is cancelled.

        Starts the transfer first if ``start()`` was not called yet.

        Returns:
            ``TransferState.COMPLETED`` or ``TransferState.CANCELLED``.

        Raises:
            OADTransferError: If the transfer failed; ``reason`` tells why.
        """
        self._loop = asyncio.get_running_loop()
        try:
            if self._state == TransferState.IDLE:
                await self.start()

            while self._state not in TERMINAL_STATES:
                try:
                    item = await asyncio.wait_for(
                        self._queue.get(), timeout=self._wait_timeout(),
                    )
                except asyncio.TimeoutError:
                    self._fail(FailureReason.ACK_TIMEOUT)
                    break
                if item is _WAKE:
                    continue
                await self.dispatch(item)
        except asyncio.CancelledError:
            self.cancel()
            raise
        finally:
            self._stop_timer()

        if self._state == TransferState.FAILED:
            reason = self._failure_reason
            raise OADTransferError(_FAILURE_DESCRIPTIONS[reason], reason)
        return self._state

    def _wait_timeout(self) -> Optional[float]:
        timeout = self._settings.ack_timeout
        if (timeout is None or self._start_time is None
                or self._state != TransferState.HEADER_SENT):
            return None
        return max(0.0, timeout - (time.monotonic() - self._start_time))

    def cancel(self) -> None:
        """Abort the transfer.  No callbacks fire afterwards.

        Must be called from the event loop thread.  Safe to call repeatedly.
        """
        if self._state in TERMINAL_STATES:
            return
        self._stop_timer()
        self._stream.reset()
        self._start_time = None
        self._log("Transfer cancelled")
        self._set_state(TransferState.CANCELLED)
        self._enqueue(_WAKE)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def dispatch(self, event: OADEvent) -> None:
        """Apply one event to the state machine."""
        if self._state in TERMINAL_STATES:
            logger.debug("Ignoring %r in %s", event, self._state.name)
            return
        if self._state == TransferState.IDLE:
            logger.warning("Ignoring %r, transfer not started", event)
            return

        if isinstance(event, Tick):
            await self._on_tick(event)
        elif isinstance(event, BlockControl):
            self._on_block_control(event)
        elif isinstance(event, HeaderAck):
            self._on_header_ack(event)
        else:
            raise TypeError(f"Unknown OAD event: {event!r}")

    def _on_header_ack(self, event: HeaderAck) -> None:
        if event.accepted:
            logger.debug("Image header accepted")
            return
        self._fail(FailureReason.HEADER_REJECTED)

    def _on_block_control(self, event: BlockControl) -> None:
        if event.is_start:
            # Same notification for the first request and a target restart
            restart = self._state == TransferState.STREAMING
            self._stream.reset()
            self._set_state(TransferState.STREAMING)
            self._start_timer()
            self._log(
                "Target restarted transfer at block 0" if restart
                else "Target requested block 0, streaming"
            )
        elif event.is_reject:
            self._fail(FailureReason.BLOCK_REJECTED)
        else:
            # Streaming is timer paced; other block requests are dropped
            logger.debug("Ignoring block request %d", event.value)

    async def _on_tick(self, event: Tick) -> None:
        if (event.generation != self._timer_generation
                or self._timer is None
                or self._state != TransferState.STREAMING):
            logger.debug("Dropping stale tick %d", event.generation)
            return

        for _ in range(self._settings.blocks_per_tick):
            block = self._stream.next_block()
            if block is None:
                self._finish_stream()
                return

            try:
                await self._transport.write_block(block)
            except TransportError as exc:
                self._fail(FailureReason.TRANSPORT_UNAVAILABLE, str(exc))
                return

            if self._state != TransferState.STREAMING:
                # Cancelled while the write was in flight
                return

        self._report_progress()

    def _finish_stream(self) -> None:
        self._stop_timer()
        # TODO: time out if the target never confirms the image after the last block
        if self._stream.block_index >= self._stream.total_blocks:
            self._report_progress()
            elapsed = self.progress().elapsed
            self._log(
                f"Transfer complete ({self._stream.total_blocks} blocks "
                f"in {elapsed:.1f}s)"
            )
            self._set_state(TransferState.COMPLETED)
        else:
            self._fail(FailureReason.PREMATURE_EXHAUSTION)

    def _fail(self, reason: FailureReason, detail: str = "") -> None:
        if self._state in TERMINAL_STATES:
            return
        self._stop_timer()
        self._failure_reason = reason
        message = _FAILURE_DESCRIPTIONS[reason]
        if detail:
            message = f"{message}: {detail}"
        logger.error("Transfer failed: %s", message)
        if self.on_log:
            self.on_log(f"Transfer failed: {message}")
        self._set_state(TransferState.FAILED)
        self._enqueue(_WAKE)
