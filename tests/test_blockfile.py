import io
import struct

import pytest
import xxhash

from helpers import FILE_HEADER, block_offsets, encode_block, encode_file
from lsm_inspect.blockfile import (
    MAX_BLOCK_SIZE,
    BlockCursor,
    compute_checksum,
    count_blocks,
    file_info,
    read_block,
    sweep_checksums,
    verify_checksum,
)
from lsm_inspect.errors import IoError, OversizeBlock, Truncated


@pytest.mark.parametrize("payload", [b"x", b"hello world", bytes(range(256)) * 40])
def test_checksum_matches_xxh32_seed_zero(payload):
    checksum = xxhash.xxh32_intdigest(payload, seed=0)
    assert compute_checksum(payload) == checksum
    assert verify_checksum(payload, checksum)


def test_checksum_detects_single_byte_change():
    payload = bytearray(b"some block payload")
    checksum = compute_checksum(bytes(payload))
    payload[3] ^= 0x01
    assert not verify_checksum(bytes(payload), checksum)


def test_read_block():
    data = encode_file([b"first", b"second"])
    f = io.BytesIO(data)
    block = read_block(f, 8)
    assert block.payload == b"first"
    assert block.size == 5
    assert block.checksum_ok
    assert block.next_offset == 8 + 8 + 5 + 8

    second = read_block(f, block.next_offset)
    assert second.payload == b"second"


def test_read_block_short_header():
    f = io.BytesIO(FILE_HEADER + b"\x05\x00\x00")
    with pytest.raises(Truncated) as exc:
        read_block(f, 8)
    assert exc.value.offset == 8


@pytest.mark.parametrize("size", [0, MAX_BLOCK_SIZE + 1, 0xFFFFFFFF])
def test_read_block_rejects_invalid_size(size):
    f = io.BytesIO(FILE_HEADER + struct.pack("<II", size, 0) + b"payload")
    with pytest.raises(OversizeBlock) as exc:
        read_block(f, 8)
    assert exc.value.size == size


def test_read_block_short_payload():
    f = io.BytesIO(FILE_HEADER + struct.pack("<II", 100, 0) + b"only a few bytes")
    with pytest.raises(Truncated):
        read_block(f, 8)


def test_cursor_iterates_all_blocks():
    payloads = [b"a" * 10, b"b" * 3, b"c" * 70]
    cursor = BlockCursor(io.BytesIO(encode_file(payloads)))
    assert cursor.header_ok
    blocks = list(cursor)
    assert [b.payload for b in blocks] == payloads
    assert [b.offset for b in blocks] == block_offsets(payloads)
    assert cursor.truncated_tail is None


def test_cursor_stops_at_partial_trailing_block():
    payloads = [b"one", b"two"]
    data = encode_file(payloads) + encode_block(b"three")[:10]
    cursor = BlockCursor(io.BytesIO(data))
    assert [b.payload for b in cursor] == payloads
    assert cursor.truncated_tail == len(encode_file(payloads))


def test_cursor_raises_on_invalid_size():
    data = encode_file([b"ok"]) + struct.pack("<II", 0, 0)
    cursor = BlockCursor(io.BytesIO(data))
    it = iter(cursor)
    assert next(it).payload == b"ok"
    with pytest.raises(OversizeBlock):
        next(it)


def test_cursor_forward_and_backward_navigation():
    payloads = [b"data-block", b"index", b"bloom-bits", b"meta"]
    offsets = block_offsets(payloads)
    cursor = BlockCursor(io.BytesIO(encode_file(payloads)))

    assert cursor.goto_first()
    assert cursor.read().payload == b"data-block"
    assert cursor.next()
    assert cursor.position == offsets[1]

    assert cursor.goto_last()
    assert cursor.position == offsets[3]
    assert cursor.read().payload == b"meta"
    assert cursor.prev()
    assert cursor.read().payload == b"bloom-bits"
    assert cursor.prev()
    assert cursor.prev()
    assert cursor.position == offsets[0]
    assert not cursor.prev()


def test_cursor_goto_last_needs_valid_footer():
    data = encode_file([b"abc"])[:-4] + b"\x00\x00\x00\x00"
    cursor = BlockCursor(io.BytesIO(data))
    assert not cursor.goto_last()


def test_cursor_on_tiny_file():
    cursor = BlockCursor(io.BytesIO(b"\x01\x02\x03"))
    assert not cursor.header_ok
    assert not cursor.goto_first()
    assert list(cursor) == []


def test_file_info(write_blocks):
    path = write_blocks("000001.klog", [b"x" * 20, b"y" * 5, b"z" * 9])
    info = file_info(path)
    assert info.block_count == 3
    assert info.first_block_size == 20
    assert info.last_block_size == 9
    assert info.file_size == path.stat().st_size
    assert info.truncated_tail is None


def test_count_blocks(write_file):
    data = encode_file([b"a", b"b", b"c", b"d"]) + b"\x07\x00"
    assert count_blocks(write_file("four.log", data)) == 4


def test_file_info_missing_file(tmp_path):
    with pytest.raises(IoError):
        file_info(tmp_path / "nope.klog")


def test_sweep_reports_single_corrupt_block(write_file):
    payloads = [f"block payload number {i}".encode() for i in range(10)]
    data = bytearray(encode_file(payloads))
    offsets = block_offsets(payloads)
    data[offsets[5] + 8 + 4] ^= 0xFF
    path = write_file("corrupt.klog", bytes(data))

    report = sweep_checksums(path)
    assert report.total_blocks == 10
    assert report.valid == 9
    assert report.invalid == 1
    assert not report.ok

    (mismatch,) = report.mismatches
    assert mismatch.index == 5
    assert mismatch.offset == offsets[5]
    assert mismatch.size == len(payloads[5])
    assert mismatch.stored == compute_checksum(payloads[5])
    assert mismatch.computed != mismatch.stored


def test_sweep_clean_file(write_blocks):
    report = sweep_checksums(write_blocks("clean.log", [b"a", b"bb", b"ccc"]))
    assert report.ok
    assert (report.total_blocks, report.valid, report.invalid) == (3, 3, 0)
    assert report.stop_reason is None


def test_sweep_stops_on_invalid_size(write_file):
    data = encode_file([b"good"]) + struct.pack("<II", MAX_BLOCK_SIZE + 1, 0) + encode_block(b"unreached")
    report = sweep_checksums(write_file("bad.klog", data))
    assert report.total_blocks == 1
    assert report.valid == 1
    assert report.invalid == 1
    assert report.stop_reason.startswith("invalid size")
    assert report.stop_offset == len(encode_file([b"good"]))


def test_sweep_ignores_footer_contents(write_file):
    data = bytearray(encode_file([b"first", b"second"]))
    # clobber the first footer's magic
    data[8 + 8 + 5 + 4:8 + 8 + 5 + 8] = b"\xff\xff\xff\xff"
    report = sweep_checksums(write_file("footer.klog", bytes(data)))
    assert report.total_blocks == 2
    assert report.ok


def test_sweep_partial_payload_at_end_is_not_corruption(write_file):
    payloads = [b"first", b"second"]
    data = encode_file(payloads) + encode_block(b"in progress")[:12]
    report = sweep_checksums(write_file("tail.log", data))
    assert report.ok
    assert (report.total_blocks, report.valid, report.invalid) == (2, 2, 0)
    assert report.stop_reason == "partial block"
    assert report.stop_offset == len(encode_file(payloads))


def test_cursor_reads_empty_block_when_allowed():
    payloads = [b"data", b"", b"meta"]
    f = io.BytesIO(encode_file(payloads))
    with pytest.raises(OversizeBlock):
        list(BlockCursor(f))

    cursor = BlockCursor(f, allow_empty=True)
    assert [b.payload for b in cursor] == payloads
    assert cursor.goto_last()
    assert cursor.prev()
    assert cursor.read().size == 0


def test_sweep_partial_header_is_not_corruption(write_file):
    data = encode_file([b"first"]) + b"\x03\x00"
    report = sweep_checksums(write_file("tail.log", data))
    assert report.ok
    assert report.total_blocks == 1
    assert report.stop_reason == "partial header"
