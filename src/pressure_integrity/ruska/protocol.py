"""
Command/response engine for the Ruska gauge.

One command may be outstanding at a time. Each attempt writes the request,
then waits (bounded by the per-attempt timeout) for the next frame from the
decoder and classifies it as a reading or an AttemptFailure. The retry loop is
driven by RetryPolicy data; only when every attempt failed is CommandFailed
raised. Nothing here logs: callers report the typed errors.
"""
from __future__ import annotations

import enum
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from .commands import Command, CommandRequest, ResponseShape, get_command
from .config import DiodeCalibration, InstrumentRange, RetryPolicy, RigConfig
from .frames import CorruptFrame, DecodeResult, FrameDecoder, FrameTooLarge, RawFrame
from .transport import Transport

FLAG_TARE = 0x01
FLAG_RATE_PER_MINUTE = 0x02

_MAX_DRAIN_READS = 64


class EngineState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    RETRYING = "retrying"


class AttemptFailure(str, enum.Enum):
    NO_RESPONSE = "no_response"
    CORRUPT_FRAME = "corrupt_frame"
    FRAME_TOO_LARGE = "frame_too_large"
    MISMATCH = "mismatch"
    INVALID_READING = "invalid_reading"


class ProtocolError(Exception):
    pass


class Busy(ProtocolError):
    pass


class Cancelled(ProtocolError):
    pass


class TransportError(ProtocolError):
    pass


class InvalidReading(ProtocolError):
    pass


class ResponseMismatch(InvalidReading):
    pass


class CommandFailed(ProtocolError):
    def __init__(self, command_id: str, reason: AttemptFailure, attempts: int) -> None:
        super().__init__(f"{command_id} failed after {attempts} attempt(s): {reason.value}")
        self.command_id = command_id
        self.reason = reason
        self.attempts = attempts


@dataclass(frozen=True)
class DecodedReading:
    command_id: str
    response_id: str
    pressure: Optional[float]
    temperature: Optional[float]
    values: Tuple[str, ...]
    flags: int
    source_frame: RawFrame


class ResponseParser:
    """Turn a frame into a DecodedReading according to the command's response shape."""

    def __init__(
        self,
        instrument: Optional[InstrumentRange] = None,
        diode: Optional[DiodeCalibration] = None,
    ) -> None:
        self.instrument = instrument or InstrumentRange()
        self.diode = diode or DiodeCalibration()

    def parse(self, command: Command, frame: RawFrame) -> DecodedReading:
        try:
            text = frame.text()
        except UnicodeDecodeError as exc:
            raise InvalidReading("Frame is not ASCII") from exc
        response_id, *rest = [part.strip() for part in text.split(",")]
        if not command.accepts(response_id):
            raise ResponseMismatch(f"Expected {'/'.join(command.response_ids)}, got '{response_id}'")
        fields = tuple(rest)
        shape = command.shape
        if len(fields) != shape.field_count:
            raise InvalidReading(
                f"{response_id} expects {shape.field_count} field(s), got {len(fields)}"
            )

        pressure: Optional[float] = None
        temperature: Optional[float] = None
        flags = 0
        if shape is ResponseShape.PRESSURE:
            pressure = self._pressure(fields[0])
        elif shape is ResponseShape.TARE_PRESSURE:
            if fields[0] == "?":
                raise InvalidReading("Tare pressure not available (PT,?)")
            pressure = self._pressure(fields[0], relative=True)
            flags |= FLAG_TARE
        elif shape is ResponseShape.PRESSURE_ELAPSED:
            pressure = self._pressure(fields[0])
            self._integer(fields[1])
        elif shape is ResponseShape.PRESSURE_TRANSDUCER:
            pressure = self._pressure(fields[0])
            self._integer(fields[1])
            self._number(fields[2])
            temperature = self.diode.temperature(self._number(fields[3]))
        elif shape is ResponseShape.RATE:
            self._number(fields[0])
            if response_id == "RM":
                flags |= FLAG_RATE_PER_MINUTE
        elif shape is ResponseShape.INTEGER:
            self._integer(fields[0])
        elif shape is ResponseShape.DECIMAL:
            self._number(fields[0])
        elif shape is ResponseShape.USER_UNIT:
            self._integer(fields[0])
            self._number(fields[1])
        else:  # pragma: no cover - every ResponseShape is handled above
            raise AssertionError(f"Unhandled response shape {shape}")

        return DecodedReading(
            command_id=command.id,
            response_id=response_id,
            pressure=pressure,
            temperature=temperature,
            values=fields,
            flags=flags,
            source_frame=frame,
        )

    def _number(self, raw: str) -> float:
        try:
            value = float(raw)
        except ValueError as exc:
            raise InvalidReading(f"Not a number: '{raw}'") from exc
        if not math.isfinite(value):
            raise InvalidReading(f"Non-finite value: '{raw}'")
        return value

    def _integer(self, raw: str) -> int:
        try:
            return int(raw)
        except ValueError as exc:
            raise InvalidReading(f"Not an integer: '{raw}'") from exc

    def _pressure(self, raw: str, relative: bool = False) -> float:
        value = self._number(raw)
        if relative:
            in_range = abs(value) <= self.instrument.max_pressure - self.instrument.min_pressure
        else:
            in_range = self.instrument.contains(value)
        if not in_range:
            raise InvalidReading(
                f"Pressure {value} outside reportable range "
                f"[{self.instrument.min_pressure}, {self.instrument.max_pressure}] {self.instrument.unit}"
            )
        return value


AttemptOutcome = Union[DecodedReading, AttemptFailure]


class ProtocolEngine:
    def __init__(
        self,
        transport: Transport,
        decoder: Optional[FrameDecoder] = None,
        *,
        retry: Optional[RetryPolicy] = None,
        parser: Optional[ResponseParser] = None,
        command_terminator: bytes = b"\r",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._decoder = decoder or FrameDecoder()
        self.retry = retry or RetryPolicy()
        self.retry.validate()
        self._parser = parser or ResponseParser()
        self._command_terminator = command_terminator
        self._clock = clock
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = EngineState.IDLE
        self._cancel_event = threading.Event()
        self._stats: Dict[str, int] = {
            "commands": 0,
            "attempts": 0,
            "retries": 0,
            "failures": 0,
            "cancelled": 0,
        }
        self.last_failure_detail: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        transport: Transport,
        config: RigConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ProtocolEngine":
        return cls(
            transport,
            config.framing.build_decoder(),
            retry=config.retry,
            parser=ResponseParser(config.instrument, config.diode),
            command_terminator=config.framing.command_terminator_bytes,
            clock=clock,
        )

    @property
    def state(self) -> EngineState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: EngineState) -> None:
        with self._state_lock:
            self._state = state

    def cancel(self) -> None:
        """Abandon the outstanding command, if any. The written request is not retracted."""
        self._cancel_event.set()

    def send(
        self,
        command: Union[Command, CommandRequest, str],
        *params: object,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DecodedReading:
        request = self._build_request(command, params)
        attempt_timeout = self.retry.timeout_sec if timeout is None else timeout
        if attempt_timeout <= 0:
            raise ValueError("timeout must be positive")
        if not self._send_lock.acquire(blocking=False):
            raise Busy(f"Cannot send {request.command.id}: a command is awaiting its response")
        try:
            self._cancel_event.clear()
            self._stats["commands"] += 1
            return self._run(request, attempt_timeout, cancel)
        finally:
            self._set_state(EngineState.IDLE)
            self._send_lock.release()

    def _build_request(self, command: Union[Command, CommandRequest, str], params: tuple) -> CommandRequest:
        if isinstance(command, CommandRequest):
            if params:
                raise ValueError("Parameters are already bound in the CommandRequest")
            return command
        if isinstance(command, str):
            command = get_command(command)
        return command.request(*params)

    def _run(
        self, request: CommandRequest, timeout: float, cancel: Optional[threading.Event]
    ) -> DecodedReading:
        policy = self.retry
        last_failure = AttemptFailure.NO_RESPONSE
        for attempt in range(1, policy.max_attempts + 1):
            self._set_state(EngineState.AWAITING_RESPONSE)
            self._stats["attempts"] += 1
            outcome = self._attempt(request, timeout, cancel)
            if isinstance(outcome, DecodedReading):
                self.last_failure_detail = None
                return outcome
            last_failure = outcome
            if attempt < policy.max_attempts:
                self._stats["retries"] += 1
                self._set_state(EngineState.RETRYING)
                if policy.backoff_sec > 0 and self._wait(policy.backoff_sec, cancel):
                    raise self._cancelled(request)
        self._stats["failures"] += 1
        raise CommandFailed(request.command.id, last_failure, policy.max_attempts)

    def _attempt(
        self, request: CommandRequest, timeout: float, cancel: Optional[threading.Event]
    ) -> AttemptOutcome:
        self._drain()
        try:
            self._transport.write(request.encode(self._command_terminator))
        except OSError as exc:
            raise TransportError(f"Write of {request.command.id} failed: {exc}") from exc
        deadline = self._clock() + timeout
        while True:
            if self._is_cancelled(cancel):
                raise self._cancelled(request)
            chunk = self._read()
            results = self._decoder.feed(chunk)
            if results:
                # positional correlation: the first frame after the write is the answer
                return self._classify(request.command, results[0])
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.last_failure_detail = f"No response within {timeout:.3f}s"
                return AttemptFailure.NO_RESPONSE
            if not chunk and self._wait(min(self.retry.poll_interval_sec, remaining), cancel):
                raise self._cancelled(request)

    def _classify(self, command: Command, result: DecodeResult) -> AttemptOutcome:
        if isinstance(result, CorruptFrame):
            self.last_failure_detail = str(result)
            return AttemptFailure.CORRUPT_FRAME
        if isinstance(result, FrameTooLarge):
            self.last_failure_detail = str(result)
            return AttemptFailure.FRAME_TOO_LARGE
        try:
            return self._parser.parse(command, result)
        except ResponseMismatch as exc:
            self.last_failure_detail = str(exc)
            return AttemptFailure.MISMATCH
        except InvalidReading as exc:
            self.last_failure_detail = str(exc)
            return AttemptFailure.INVALID_READING

    def _read(self) -> bytes:
        try:
            return self._transport.read_available()
        except OSError as exc:
            raise TransportError(f"Read failed: {exc}") from exc

    def _drain(self) -> None:
        """Drop stale input so a late answer cannot be attributed to the next request."""
        self._decoder.reset()
        drain = getattr(self._transport, "drain", None)
        try:
            if drain is not None:
                drain()
                return
            for _ in range(_MAX_DRAIN_READS):
                if not self._transport.read_available():
                    break
        except OSError as exc:
            raise TransportError(f"Drain failed: {exc}") from exc

    def _is_cancelled(self, cancel: Optional[threading.Event]) -> bool:
        return self._cancel_event.is_set() or (cancel is not None and cancel.is_set())

    def _wait(self, seconds: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep up to *seconds*; True when either cancel source fired."""
        if cancel is None:
            return self._cancel_event.wait(seconds)
        # two events to watch: sleep on the caller's in poll-sized slices
        deadline = time.monotonic() + seconds
        while not self._is_cancelled(cancel):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            cancel.wait(min(self.retry.poll_interval_sec, remaining))
        return self._is_cancelled(cancel)

    def _cancelled(self, request: CommandRequest) -> Cancelled:
        self._stats["cancelled"] += 1
        return Cancelled(
            f"{request.command.id} cancelled; the instrument may still act on the written request"
        )

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats.update(self._decoder.stats())
        return stats
