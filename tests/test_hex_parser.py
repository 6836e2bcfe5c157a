import pytest

from config.constants import RecordType
from flash.hex_parser import (
    FirmwareParseError,
    FirmwareParser,
    FlashImageAssembler,
    iter_records,
    parse_record,
)


def ihex(record_type: int, address: int, data: bytes = b"") -> str:
    """Build a record line; the checksum byte is not checked by the parser."""
    return f":{len(data):02X}{address:04X}{record_type:02X}{data.hex().upper()}00"


def assemble(*lines: str) -> tuple[bytes, int]:
    assembler = FlashImageAssembler()
    assembler.feed_text("\n".join(lines))
    return assembler.result()


def test_parse_data_record() -> None:
    record = parse_record(":100000000C949C010C94C5010C94C5010C94C50181")

    assert record is not None
    assert record.byte_count == 16
    assert record.address == 0
    assert record.record_type == RecordType.DATA
    assert record.data == bytes.fromhex("0C949C010C94C5010C94C5010C94C501")


def test_parse_ignores_checksum() -> None:
    record = parse_record(":1008D0009FBF2FEF3FEF25C06FB7F89442A153A1FF")

    assert record is not None
    assert record.address == 0x08D0


def test_parse_extended_linear_address() -> None:
    record = parse_record(":020000040001F9")

    assert record.record_type == RecordType.EXTENDED_LINEAR_ADDRESS
    assert record.upper_address == 0x0001


@pytest.mark.parametrize("line", [
    "",
    "100000000C949C01",            # no start code
    ":1G0000000C949C010C94C5010C94C5010C94C50181",   # bad byte count
    ":10000Z000C949C010C94C5010C94C5010C94C50181",   # bad address
    ":100000060C949C010C94C5010C94C5010C94C50181",   # unknown record type
    ":100000000C949C010C94C501",   # truncated payload
    ":04000000ZZ00000000",         # bad payload byte
    "  :100000000C949C010C94C5010C94C5010C94C50181",   # leading whitespace
])
def test_malformed_lines_are_skipped(line: str) -> None:
    assert parse_record(line) is None


def test_trailing_whitespace_is_accepted() -> None:
    record = parse_record(":100000000C949C010C94C5010C94C5010C94C50181 \t\r\n")

    assert record is not None
    assert record.byte_count == 16


def test_iter_records_handles_any_newline() -> None:
    text = (
        ihex(RecordType.DATA, 0x0000, bytes(16)) + "\r\n"
        + "garbage\n"
        + ihex(RecordType.DATA, 0x0010, bytes(16)) + "\r"
        + ihex(RecordType.END_OF_FILE, 0x0000) + "\n"
    )

    records = list(iter_records(text))

    assert [r.record_type for r in records] == [
        RecordType.DATA, RecordType.DATA, RecordType.END_OF_FILE,
    ]


def test_contiguous_records_concatenate() -> None:
    data, load_address = assemble(
        ihex(RecordType.DATA, 0x1000, bytes(range(16))),
        ihex(RecordType.DATA, 0x1010, bytes(range(16, 32))),
        ihex(RecordType.END_OF_FILE, 0x0000),
    )

    assert data == bytes(range(32))
    assert load_address == 0x1000 // 4


def test_gap_is_filled_with_erased_flash() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 16),
        ihex(RecordType.DATA, 0x0030, b"\x22" * 16),
    )

    assert len(data) == 64
    assert data[:16] == b"\x11" * 16
    assert data[16:48] == b"\xFF" * 32
    assert data[48:] == b"\x22" * 16


def test_unaligned_gap_pads_image_to_whole_blocks() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 16),
        ihex(RecordType.DATA, 0x0018, b"\x22" * 16),
    )

    assert len(data) == 48
    assert data[16:24] == b"\xFF" * 8
    assert data[24:40] == b"\x22" * 16
    assert data[40:] == b"\xFF" * 8


def test_long_record_pads_image_to_whole_blocks() -> None:
    data, _ = assemble(ihex(RecordType.DATA, 0x0000, b"\x11" * 20))

    assert data == b"\x11" * 20 + b"\xFF" * 12


def test_short_record_is_padded_to_block_size() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 10),
        ihex(RecordType.DATA, 0x0010, b"\x22" * 16),
    )

    assert data[:10] == b"\x11" * 10
    assert data[10:16] == b"\xFF" * 6
    assert data[16:] == b"\x22" * 16
    assert len(data) % 16 == 0


def test_short_record_padding_counts_towards_address() -> None:
    # 10 bytes at 0x00 plus 6 pad bytes end at 0x10, so 0x20 needs 16 filler
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 10),
        ihex(RecordType.DATA, 0x0020, b"\x22" * 16),
    )

    assert len(data) == 48
    assert data[10:32] == b"\xFF" * 22


def test_extended_linear_address_sets_base() -> None:
    assembler = FlashImageAssembler()
    assembler.feed_text("\n".join([
        ihex(RecordType.EXTENDED_LINEAR_ADDRESS, 0x0000, b"\x00\x01"),
        ihex(RecordType.DATA, 0x0010, bytes(16)),
    ]))

    _, load_address = assembler.result()

    assert load_address == ((0x0001 << 16) + 0x0010) // 4


def test_extended_linear_address_applies_to_gap() -> None:
    data, load_address = assemble(
        ihex(RecordType.DATA, 0xFFF0, b"\x11" * 16),
        ihex(RecordType.EXTENDED_LINEAR_ADDRESS, 0x0000, b"\x00\x01"),
        ihex(RecordType.DATA, 0x0010, b"\x22" * 16),
    )

    assert load_address == 0xFFF0 // 4
    assert data == b"\x11" * 16 + b"\xFF" * 16 + b"\x22" * 16


def test_load_address_is_taken_from_first_data_record_only() -> None:
    _, load_address = assemble(
        ihex(RecordType.DATA, 0x2000, bytes(16)),
        ihex(RecordType.DATA, 0x1000, bytes(16)),
    )

    assert load_address == 0x2000 // 4


def test_lower_address_is_appended_without_reordering() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0100, b"\x11" * 16),
        ihex(RecordType.DATA, 0x0000, b"\x22" * 16),
    )

    assert data == b"\x11" * 16 + b"\x22" * 16


def test_unsupported_records_are_ignored() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 16),
        ihex(RecordType.START_LINEAR_ADDRESS, 0x0000, b"\x00\x00\x01\x00"),
        ihex(RecordType.EXTENDED_SEGMENT_ADDRESS, 0x0000, b"\x10\x00"),
        ihex(RecordType.DATA, 0x0010, b"\x22" * 16),
    )

    assert data == b"\x11" * 16 + b"\x22" * 16


def test_records_after_end_of_file_are_still_applied() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 16),
        ihex(RecordType.END_OF_FILE, 0x0000),
        ihex(RecordType.DATA, 0x0010, b"\x22" * 16),
    )

    assert len(data) == 32


def test_malformed_line_does_not_stop_assembly() -> None:
    data, _ = assemble(
        ihex(RecordType.DATA, 0x0000, b"\x11" * 16),
        ":10001000ZZ",
        ihex(RecordType.DATA, 0x0010, b"\x22" * 16),
    )

    assert data == b"\x11" * 16 + b"\x22" * 16


def test_empty_input_yields_empty_image() -> None:
    image = FirmwareParser().parse_text("not a hex file\n\n")

    assert image.data == b""
    assert image.length == 0
    assert image.load_address == 0


def test_parse_text_is_deterministic() -> None:
    text = "\n".join([
        ihex(RecordType.EXTENDED_LINEAR_ADDRESS, 0x0000, b"\x00\x00"),
        ihex(RecordType.DATA, 0x1000, bytes(range(16))),
        ihex(RecordType.DATA, 0x1040, bytes(range(7))),
        ihex(RecordType.END_OF_FILE, 0x0000),
    ])
    parser = FirmwareParser()

    first = parser.parse_text(text)
    second = parser.parse_text(text)

    assert first.data == second.data
    assert first.load_address == second.load_address
    assert first.length == second.length
    assert first.crc == second.crc


def test_parse_file(tmp_path) -> None:
    path = tmp_path / "app_stack.hex"
    path.write_text("\n".join([
        ihex(RecordType.DATA, 0x1000, bytes(16)),
        ihex(RecordType.END_OF_FILE, 0x0000),
    ]) + "\n")

    image = FirmwareParser().parse(str(path))

    assert image.source == "app_stack.hex"
    assert image.length == 4
    assert image.load_address == 0x400


def test_parse_missing_file_raises() -> None:
    with pytest.raises(FirmwareParseError):
        FirmwareParser().parse("/nonexistent/fullflash.hex")
