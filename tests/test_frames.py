from __future__ import annotations

import pytest

from pressure_integrity.ruska.frames import (
    Checksum,
    CorruptFrame,
    FrameDecoder,
    FrameTooLarge,
    FramingMode,
    RawFrame,
    append_checksum,
    crc16_ccitt,
    verify_frame,
)


def _payloads(results) -> list[bytes]:
    return [r.payload for r in results if isinstance(r, RawFrame)]


def test_line_frames_independent_of_chunking() -> None:
    stream = b"PA,350.1234\rPB,350.1200,125\rUN,3\r"
    whole = FrameDecoder().feed(stream)

    bytewise = FrameDecoder()
    split = []
    for i in range(len(stream)):
        split.extend(bytewise.feed(stream[i : i + 1]))

    assert _payloads(whole) == [b"PA,350.1234", b"PB,350.1200,125", b"UN,3"]
    assert _payloads(split) == _payloads(whole)


def test_partial_frame_waits_for_terminator() -> None:
    decoder = FrameDecoder()
    assert decoder.feed(b"PA,35") == []
    results = decoder.feed(b"0.5\r")
    assert len(results) == 1
    assert results[0].payload == b"PA,350.5"
    assert results[0].raw == b"PA,350.5\r"


def test_crlf_and_empty_lines_are_ignored() -> None:
    decoder = FrameDecoder(terminator=b"\r")
    results = decoder.feed(b"\r\nPA,1.0\r\n\r\nUN,3\r")
    assert _payloads(results) == [b"PA,1.0", b"UN,3"]


def test_corrupt_frame_then_resync() -> None:
    decoder = FrameDecoder(checksum=Checksum.XOR8)
    good = append_checksum(b"PA,350.0", Checksum.XOR8) + b"\r"
    bad = b"PA,351.0*00\r"
    results = decoder.feed(bad + good)
    assert isinstance(results[0], CorruptFrame)
    assert results[0].raw == bad
    assert isinstance(results[1], RawFrame)
    assert results[1].payload == b"PA,350.0"
    assert decoder.stats() == {"frames": 1, "corrupt_frames": 1, "oversize_frames": 0}


def test_non_printable_payload_is_corrupt() -> None:
    decoder = FrameDecoder()
    results = decoder.feed(b"PA,3\x0050.0\rPA,350.0\r")
    assert isinstance(results[0], CorruptFrame)
    assert _payloads(results) == [b"PA,350.0"]


def test_oversize_without_terminator_resyncs() -> None:
    decoder = FrameDecoder(max_frame_bytes=16)
    results = decoder.feed(b"X" * 20)
    assert len(results) == 1
    assert isinstance(results[0], FrameTooLarge)

    # rest of the runaway line is dropped, the next frame decodes
    results = decoder.feed(b"YYYY\rPA,1.5\r")
    assert _payloads(results) == [b"PA,1.5"]
    assert decoder.stats()["oversize_frames"] == 1


def test_oversize_resync_with_split_crlf_terminator() -> None:
    decoder = FrameDecoder(terminator=b"\r\n", max_frame_bytes=8)
    results = decoder.feed(b"X" * 12)
    assert isinstance(results[0], FrameTooLarge)
    assert decoder.feed(b"YY\r") == []
    results = decoder.feed(b"\nPA,1.5\r\n")
    assert _payloads(results) == [b"PA,1.5"]


def test_oversize_detected_with_terminator_half_buffered() -> None:
    decoder = FrameDecoder(terminator=b"\r\n", max_frame_bytes=8)
    results = decoder.feed(b"X" * 11 + b"\r")
    assert isinstance(results[0], FrameTooLarge)
    results = decoder.feed(b"\nUN,3\r\n")
    assert _payloads(results) == [b"UN,3"]


def test_oversize_terminated_frame() -> None:
    decoder = FrameDecoder(max_frame_bytes=8)
    results = decoder.feed(b"PA,123456.789\rUN,3\r")
    assert isinstance(results[0], FrameTooLarge)
    assert _payloads(results) == [b"UN,3"]


@pytest.mark.parametrize("kind", [Checksum.XOR8, Checksum.SUM8, Checksum.CRC16])
def test_checksum_suffix_verifies(kind: Checksum) -> None:
    body = append_checksum(b"PF,350.0000,125,30012.3456,0.6012", kind)
    assert body.count(b"*") == 1
    assert len(body.split(b"*")[1]) == kind.digits
    assert verify_frame(body, kind) == b"PF,350.0000,125,30012.3456,0.6012"


def test_checksum_missing_suffix() -> None:
    with pytest.raises(CorruptFrame):
        verify_frame(b"PA,350.0", Checksum.CRC16)
    with pytest.raises(CorruptFrame):
        verify_frame(b"PA,350.0*ZZ", Checksum.XOR8)


def test_crc16_ccitt_reference_value() -> None:
    assert crc16_ccitt(b"123456789") == 0x29B1


def test_fixed_frames_split_header_and_resync() -> None:
    decoder = FrameDecoder(FramingMode.FIXED, header=b"\x55\xAA", payload_length=8, checksum=Checksum.XOR8)
    frame = b"\x55\xAA" + append_checksum(b"PA,350.0", Checksum.XOR8)
    noise = b"\x00\x13"
    stream = noise + frame + frame
    results = []
    for i in range(0, len(stream), 3):
        results.extend(decoder.feed(stream[i : i + 3]))
    assert _payloads(results) == [b"PA,350.0", b"PA,350.0"]


def test_fixed_corrupt_frame_does_not_swallow_next() -> None:
    decoder = FrameDecoder(FramingMode.FIXED, header=b"\x55\xAA", payload_length=8, checksum=Checksum.XOR8)
    good = b"\x55\xAA" + append_checksum(b"PA,350.0", Checksum.XOR8)
    truncated = b"\x55\xAAPA,3"
    results = decoder.feed(truncated + good)
    assert any(isinstance(r, CorruptFrame) for r in results)
    assert _payloads(results) == [b"PA,350.0"]


def test_iter_frames_is_lazy() -> None:
    decoder = FrameDecoder()
    frames = decoder.iter_frames(iter([b"PA,1", b".0\rPA,", b"2.0\r"]))
    assert next(frames).payload == b"PA,1.0"
    assert next(frames).payload == b"PA,2.0"


def test_invalid_decoder_settings() -> None:
    with pytest.raises(ValueError):
        FrameDecoder(terminator=b"")
    with pytest.raises(ValueError):
        FrameDecoder(FramingMode.FIXED, payload_length=0)
    with pytest.raises(ValueError):
        FrameDecoder(max_frame_bytes=0)
