from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Union


class FramingMode(str, enum.Enum):
    LINE = "line"
    FIXED = "fixed"


class Checksum(str, enum.Enum):
    NONE = "none"
    XOR8 = "xor8"
    SUM8 = "sum8"
    CRC16 = "crc16"

    @property
    def digits(self) -> int:
        return {Checksum.NONE: 0, Checksum.XOR8: 2, Checksum.SUM8: 2, Checksum.CRC16: 4}[self]

    @property
    def suffix_length(self) -> int:
        # '*' separator plus the hex digits
        return 0 if self is Checksum.NONE else 1 + self.digits


class DecodeError(Exception):
    """A frame boundary was found (or overrun) but the bytes are not a valid frame."""

    def __init__(self, message: str, raw: bytes = b"") -> None:
        super().__init__(message)
        self.raw = raw


class CorruptFrame(DecodeError):
    pass


class FrameTooLarge(DecodeError):
    pass


@dataclass(frozen=True)
class RawFrame:
    payload: bytes
    raw: bytes

    def text(self) -> str:
        return self.payload.decode("ascii")


DecodeResult = Union[RawFrame, DecodeError]

CHECKSUM_SEPARATOR = b"*"


def crc16_ccitt(data: bytes, poly: int = 0x1021, init: int = 0xFFFF) -> int:
    crc = init
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def xor8(data: bytes) -> int:
    value = 0
    for byte in data:
        value ^= byte
    return value


def sum8(data: bytes) -> int:
    return sum(data) & 0xFF


def compute_checksum(payload: bytes, kind: Checksum) -> int:
    if kind is Checksum.XOR8:
        return xor8(payload)
    if kind is Checksum.SUM8:
        return sum8(payload)
    if kind is Checksum.CRC16:
        return crc16_ccitt(payload)
    raise ValueError("Checksum.NONE has no value")


def append_checksum(payload: bytes, kind: Checksum) -> bytes:
    """Return *payload* followed by its ``*HH``/``*HHHH`` checksum suffix."""
    if kind is Checksum.NONE:
        return payload
    value = compute_checksum(payload, kind)
    return payload + CHECKSUM_SEPARATOR + f"{value:0{kind.digits}X}".encode("ascii")


def _is_printable(data: bytes) -> bool:
    return all(0x20 <= byte <= 0x7E for byte in data)


def verify_frame(body: bytes, kind: Checksum) -> bytes:
    """Check integrity of a frame body and return its payload, raising CorruptFrame."""
    if kind is Checksum.NONE:
        payload = body
    else:
        if len(body) < kind.suffix_length or body[-kind.suffix_length] != CHECKSUM_SEPARATOR[0]:
            raise CorruptFrame("Missing checksum suffix", body)
        payload = body[: -kind.suffix_length]
        digits = body[-kind.digits :]
        try:
            expected = int(digits.decode("ascii"), 16)
        except (UnicodeDecodeError, ValueError) as exc:
            raise CorruptFrame(f"Malformed checksum {digits!r}", body) from exc
        actual = compute_checksum(payload, kind)
        if actual != expected:
            raise CorruptFrame(
                f"Checksum mismatch (expected={expected:0{kind.digits}X}, actual={actual:0{kind.digits}X})",
                body,
            )
    if not payload or not _is_printable(payload):
        raise CorruptFrame("Payload is not printable ASCII", body)
    return payload


class FrameDecoder:
    """
    Streaming decoder turning arbitrarily chunked serial input into frames.

    LINE mode splits on a terminator; FIXED mode looks for a header followed by
    a fixed-size payload. Integrity failures are returned as CorruptFrame values
    and the decoder resynchronises on the next frame boundary. In LINE mode a
    buffer growing past ``max_frame_bytes`` without a terminator yields
    FrameTooLarge and the rest of that line is discarded.
    """

    def __init__(
        self,
        mode: FramingMode = FramingMode.LINE,
        *,
        terminator: bytes = b"\r",
        checksum: Checksum = Checksum.NONE,
        header: bytes = b"\x55\xAA",
        payload_length: int = 0,
        max_frame_bytes: int = 256,
    ) -> None:
        self.mode = FramingMode(mode)
        self.checksum = Checksum(checksum)
        self.terminator = terminator
        self.header = header
        self.payload_length = payload_length
        self.max_frame_bytes = max_frame_bytes
        if max_frame_bytes <= 0:
            raise ValueError("max_frame_bytes must be positive")
        if self.mode is FramingMode.LINE and not terminator:
            raise ValueError("LINE framing requires a non-empty terminator")
        if self.mode is FramingMode.FIXED:
            if payload_length <= 0:
                raise ValueError("FIXED framing requires a positive payload_length")
            if self.frame_length > max_frame_bytes:
                raise ValueError(
                    f"Fixed frame length {self.frame_length} exceeds max_frame_bytes {max_frame_bytes}"
                )
        self._buffer = bytearray()
        self._discarding = False
        self._stats: Dict[str, int] = {"frames": 0, "corrupt_frames": 0, "oversize_frames": 0}

    @property
    def frame_length(self) -> int:
        return len(self.header) + self.payload_length + self.checksum.suffix_length

    def feed(self, chunk: bytes) -> List[DecodeResult]:
        """Buffer *chunk* and return every frame (or decode error) it completes."""
        if chunk:
            self._buffer.extend(chunk)
        if self.mode is FramingMode.LINE:
            return self._extract_lines()
        return self._extract_fixed()

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[DecodeResult]:
        for chunk in chunks:
            yield from self.feed(chunk)

    def _extract_lines(self) -> List[DecodeResult]:
        results: List[DecodeResult] = []
        term = self.terminator
        while True:
            if self._discarding:
                end = self._buffer.find(term)
                if end < 0:
                    # a multi-byte terminator may be split across chunks
                    self._retain_tail(len(term) - 1)
                    break
                del self._buffer[: end + len(term)]
                self._discarding = False
                continue
            end = self._buffer.find(term)
            if end < 0:
                if len(self._buffer) > self.max_frame_bytes:
                    raw = bytes(self._buffer)
                    self._retain_tail(len(term) - 1)
                    self._discarding = True
                    self._stats["oversize_frames"] += 1
                    results.append(
                        FrameTooLarge(f"No terminator within {self.max_frame_bytes} bytes", raw)
                    )
                break
            raw = bytes(self._buffer[: end + len(term)])
            body = bytes(self._buffer[:end]).strip(b"\r\n")
            del self._buffer[: end + len(term)]
            if not body:
                continue
            if len(body) > self.max_frame_bytes:
                self._stats["oversize_frames"] += 1
                results.append(FrameTooLarge(f"Frame of {len(body)} bytes exceeds limit", raw))
                continue
            results.append(self._validate(body, raw))
        return results

    def _extract_fixed(self) -> List[DecodeResult]:
        results: List[DecodeResult] = []
        header = self.header
        frame_len = self.frame_length
        while True:
            start = self._buffer.find(header)
            if start < 0:
                # keep a possibly split header for the next chunk
                self._retain_tail(len(header) - 1)
                break
            if start:
                del self._buffer[:start]
            if len(self._buffer) < frame_len:
                break
            raw = bytes(self._buffer[:frame_len])
            result = self._validate(raw[len(header) :].rstrip(b" "), raw)
            if isinstance(result, RawFrame):
                del self._buffer[:frame_len]
            else:
                # drop only the header so a truncated frame cannot swallow the next one
                del self._buffer[: len(header) or frame_len]
            results.append(result)
        return results

    def _retain_tail(self, keep: int) -> None:
        if keep <= 0:
            self._buffer.clear()
        elif len(self._buffer) > keep:
            del self._buffer[:-keep]

    def _validate(self, body: bytes, raw: bytes) -> DecodeResult:
        try:
            payload = verify_frame(body, self.checksum)
        except CorruptFrame as exc:
            self._stats["corrupt_frames"] += 1
            exc.raw = raw
            return exc
        self._stats["frames"] += 1
        return RawFrame(payload=payload, raw=raw)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._buffer.clear()
        self._discarding = False
