from config.constants import ImageType
from config.settings import ImageSettings
from flash.image import FirmwareImage


def test_header_fields() -> None:
    image = FirmwareImage(bytes(4096), load_address=0x0400)

    assert image.length == 1024
    assert image.crc == 0x0000
    assert image.crc_shadow == 0xFFFF
    assert image.version == 0
    assert image.image_type == ImageType.APP_STACK
    assert image.uid == b"EEEE"
    assert image.byte_address == 0x1000


def test_identify_payload_layout() -> None:
    image = FirmwareImage(
        bytes(4096), load_address=0x12345678, settings=ImageSettings(version=0x0102),
    )

    payload = image.identify_payload()

    assert len(payload) == 16
    assert payload == bytes([
        0x00, 0x00,              # crc
        0xFF, 0xFF,              # crc shadow
        0x02, 0x01,              # version
        0x00, 0x04,              # length in words
        0x45, 0x45, 0x45, 0x45,  # uid
        0x78, 0x56,              # address, low 16 bits
        0x01,                    # image type
        0xFF,
    ])


def test_identify_payload_carries_crc_little_endian() -> None:
    data = b"\xAA\xBB\xCC\xDD" + b"\x00\x00\x00" + b"123456789"
    image = FirmwareImage(data, load_address=0)

    assert image.crc == 0x31C3
    assert image.identify_payload()[:2] == b"\xC3\x31"


def test_empty_image_header() -> None:
    image = FirmwareImage(b"", load_address=0)

    assert len(image) == 0
    assert image.length == 0
    assert image.identify_payload()[6:8] == b"\x00\x00"


def test_data_is_immutable_copy() -> None:
    buffer = bytearray(16)
    image = FirmwareImage(buffer, load_address=0)
    buffer[0] = 0x55

    assert image.data == bytes(16)
    assert isinstance(image.data, bytes)


def test_header_summary_mentions_fields() -> None:
    image = FirmwareImage(bytes(32), load_address=0x0400)

    summary = image.header_summary()

    assert "ImgHdr.len     = 8" in summary
    assert "ImgHdr.addr    = 0x0400" in summary
    assert "ImgHdr.uid     = 0x45454545" in summary


def test_to_binfile_places_image_at_byte_address() -> None:
    data = bytes(range(32))
    image = FirmwareImage(data, load_address=0x0400)

    binfile = image.to_binfile()

    assert binfile.minimum_address == 0x1000
    assert binfile.as_binary() == data
