"""OAD Flash Tool — command-line entry point."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from ble.driver import BleakOADDriver, OADDriverError
from config.settings import BLESettings, ImageSettings, TransferSettings
from flash.hex_parser import FirmwareParseError, FirmwareParser
from flash.image import FirmwareImage
from flash.oad_controller import OADTransferError, TransferController

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure root logger."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oad-flash",
        description="Stream a fullflash Intel HEX image to a TI OAD target.",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log per-record and per-block traffic")
    parser.add_argument("--image-version", type=int, default=0,
                        help="version written into the image header")

    sub = parser.add_subparsers(dest="command", required=True)

    info = sub.add_parser("info", help="print the OAD image header")
    info.add_argument("hex_file")

    export = sub.add_parser("export", help="write the assembled image")
    export.add_argument("hex_file")
    export.add_argument("output", help=".bin for raw binary, Intel HEX otherwise")

    defaults = TransferSettings()
    flash = sub.add_parser("flash", help="transfer the image over BLE")
    flash.add_argument("hex_file")
    flash.add_argument("--address", required=True, help="BLE address of the target")
    flash.add_argument("--blocks-per-tick", type=int, default=defaults.blocks_per_tick)
    flash.add_argument("--interval", type=float, default=defaults.tick_interval * 1000,
                       help="block timer interval in milliseconds")
    flash.add_argument("--ack-timeout", type=float, default=None,
                       help="seconds to wait for the target to request block 0")
    return parser


def _load_image(args: argparse.Namespace) -> FirmwareImage:
    return FirmwareParser().parse(
        args.hex_file, ImageSettings(version=args.image_version),
    )


def _cmd_info(args: argparse.Namespace) -> int:
    image = _load_image(args)
    print(repr(image))
    print(image.header_summary())
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    image = _load_image(args)
    binfile = image.to_binfile()
    output = Path(args.output)
    if output.suffix.lower() == ".bin":
        output.write_bytes(binfile.as_binary())
    else:
        output.write_text(binfile.as_ihex(), encoding="ascii")
    logger.info("Wrote %s (%d bytes)", output, len(image))
    return 0


def _print_progress(percent: int, message: str) -> None:
    print(f"\r{percent:3d}% {message}", end="", flush=True)


async def _flash(image: FirmwareImage, ble: BLESettings, transfer: TransferSettings) -> int:
    async with BleakOADDriver(ble) as driver:
        controller = TransferController(image, driver, transfer)
        driver.on_event = controller.post
        controller.on_progress = _print_progress
        try:
            await controller.run()
        except OADTransferError as exc:
            print()
            logger.error("Firmware update failed: %s", exc)
            return 1
    print()
    logger.info(
        "Firmware update complete. The device performs the update "
        "post-process on its next power cycle."
    )
    return 0


def _cmd_flash(args: argparse.Namespace) -> int:
    image = _load_image(args)
    transfer = TransferSettings(
        blocks_per_tick=args.blocks_per_tick,
        tick_interval=args.interval / 1000.0,
        ack_timeout=args.ack_timeout,
    )
    try:
        return asyncio.run(_flash(image, BLESettings(address=args.address), transfer))
    except OADDriverError as exc:
        logger.error("BLE error: %s", exc)
        return 1


_COMMANDS = {
    "info": _cmd_info,
    "export": _cmd_export,
    "flash": _cmd_flash,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Run the command line tool."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        return _COMMANDS[args.command](args)
    except FirmwareParseError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
