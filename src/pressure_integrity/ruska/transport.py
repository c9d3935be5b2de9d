from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol

import serial

from .commands import get_command
from .frames import Checksum, append_checksum


class Transport(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def read_available(self) -> bytes:
        ...

    def close(self) -> None:
        ...


@dataclass
class SerialSettings:
    port: str
    baudrate: int = 9600
    bytesize: int = 8
    parity: str = "N"
    stopbits: float = 1
    timeout: float = 0.05


class SerialTransport:
    """Non-blocking view of a pyserial port: reads return whatever is already buffered."""

    def __init__(self, settings: SerialSettings, chunk_size: int = 256) -> None:
        self.settings = settings
        self._chunk_size = max(chunk_size, 1)
        self._serial = serial.Serial(
            port=settings.port,
            baudrate=settings.baudrate,
            bytesize=settings.bytesize,
            parity=settings.parity,
            stopbits=settings.stopbits,
            timeout=settings.timeout,
            write_timeout=settings.timeout,
        )

    @property
    def name(self) -> str:
        return self.settings.port

    def write(self, data: bytes) -> None:
        self._serial.write(data)
        self._serial.flush()

    def read_available(self) -> bytes:
        waiting = self._serial.in_waiting
        if not waiting:
            return b""
        return self._serial.read(min(waiting, self._chunk_size))

    def drain(self) -> None:
        self._serial.reset_input_buffer()

    def close(self) -> None:
        self._serial.close()


Responder = Callable[[bytes], Optional[bytes]]


class LoopbackTransport:
    """
    In-memory transport used for demo mode and tests.

    Every write is passed to *responder*; whatever it returns is queued for
    subsequent reads. ``inject`` queues unsolicited bytes, and ``chunk_size``
    splits queued data into small reads to mimic a slow line.
    """

    def __init__(self, responder: Optional[Responder] = None, chunk_size: int = 0) -> None:
        self._responder = responder
        self._chunk_size = chunk_size
        self._pending: Deque[bytes] = deque()
        self._lock = threading.Lock()
        self.written: List[bytes] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "loopback"

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("Loopback transport is closed")
        self.written.append(bytes(data))
        if self._responder is None:
            return
        reply = self._responder(bytes(data))
        if reply:
            self.inject(reply)

    def inject(self, data: bytes) -> None:
        with self._lock:
            if self._chunk_size > 0:
                for offset in range(0, len(data), self._chunk_size):
                    self._pending.append(data[offset : offset + self._chunk_size])
            else:
                self._pending.append(data)

    def read_available(self) -> bytes:
        with self._lock:
            if not self._pending:
                return b""
            return self._pending.popleft()

    def close(self) -> None:
        self.closed = True


class DemoGauge:
    """
    Responder imitating a Ruska gauge on a slowly leaking volume.

    Pressure decays linearly from *start_pressure* by *leak_rate* per second of
    the supplied clock; other read commands get fixed plausible answers.
    """

    def __init__(
        self,
        clock: Callable[[], float],
        *,
        start_pressure: float = 350.0,
        leak_rate: float = 0.0005,
        checksum: Checksum = Checksum.NONE,
        terminator: bytes = b"\r\n",
    ) -> None:
        self._clock = clock
        self._t0 = clock()
        self.start_pressure = start_pressure
        self.leak_rate = leak_rate
        self.checksum = checksum
        self.terminator = terminator
        self._fixed: Dict[str, str] = {
            "PC": "0",
            "PI": "10",
            "RC": "0",
            "RI": "10",
            "RP": "0",
            "RO": "0",
            "UN": "3",
            "TM": "0",
            "ER": "0",
            "ST": "0",
            "XB": "12.60",
            "V1": "2.31",
            "V2": "1.05",
            "ECHO": "0",
            "MD": "0",
        }

    def __call__(self, data: bytes) -> Optional[bytes]:
        message = data.decode("ascii", errors="ignore").strip()
        if not message:
            return None
        cmd_id, _, params = message.partition(",")
        try:
            command = get_command(cmd_id)
        except ValueError:
            return None
        elapsed = self._clock() - self._t0
        pressure = self.start_pressure - self.leak_rate * elapsed
        tenths = int(elapsed * 10) % 864000
        if command.id in {"PA", "PS", "PT"}:
            fields = [f"{pressure:.4f}"]
        elif command.id == "PB":
            fields = [f"{pressure:.4f}", str(tenths)]
        elif command.id == "PF":
            fields = [f"{pressure:.4f}", str(tenths), "30012.3456", "0.6012"]
        elif command.id == "RS":
            fields = [f"{-self.leak_rate:.6f}"]
        elif command.id == "ET":
            fields = [str(tenths)]
        elif command.id == "UD":
            fields = [params or "1", "1.000000", "USR" + (params or "1")]
        else:
            fields = [self._fixed.get(command.id, "0")]
        payload = ",".join([command.id, *fields]).encode("ascii")
        return append_checksum(payload, self.checksum) + self.terminator
