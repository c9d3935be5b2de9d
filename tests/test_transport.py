from __future__ import annotations

import pytest

from pressure_integrity.ruska.protocol import ProtocolEngine, TransportError
from pressure_integrity.ruska.transport import SerialSettings, SerialTransport


class FakeSerialInstance:
    def __init__(self, replies: dict[bytes, bytes], **kwargs):
        self.kwargs = kwargs
        self._replies = replies
        self._rx = bytearray(b"PA,1.0\r")  # stale line left on the port
        self.written: list[bytes] = []
        self.resets = 0
        self.closed = False
        self.fail_reads = False

    @property
    def in_waiting(self) -> int:
        if self.fail_reads:
            raise OSError("device disconnected")
        return len(self._rx)

    def read(self, size: int) -> bytes:
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def write(self, data: bytes) -> int:
        self.written.append(data)
        self._rx.extend(self._replies.get(data, b""))
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        self.resets += 1
        self._rx.clear()

    def close(self) -> None:
        self.closed = True


class FakeSerialModule:
    def __init__(self, replies: dict[bytes, bytes]):
        self._replies = replies
        self.instances: list[FakeSerialInstance] = []

    def Serial(self, **kwargs):
        instance = FakeSerialInstance(self._replies, **kwargs)
        self.instances.append(instance)
        return instance


def test_serial_transport_round_trip(monkeypatch) -> None:
    fake_serial = FakeSerialModule({b"PA\r": b"PA,350.2500\r"})
    monkeypatch.setattr("pressure_integrity.ruska.transport.serial", fake_serial)

    transport = SerialTransport(SerialSettings(port="/dev/ttyFAKE", baudrate=19200), chunk_size=4)
    port = fake_serial.instances[0]
    assert port.kwargs["port"] == "/dev/ttyFAKE"
    assert port.kwargs["baudrate"] == 19200

    reading = ProtocolEngine(transport).send("PA")
    assert reading.pressure == pytest.approx(350.25)
    assert port.resets == 1
    assert port.written == [b"PA\r"]

    transport.close()
    assert port.closed


def test_serial_read_failure_raises_transport_error(monkeypatch) -> None:
    fake_serial = FakeSerialModule({})
    monkeypatch.setattr("pressure_integrity.ruska.transport.serial", fake_serial)
    transport = SerialTransport(SerialSettings(port="/dev/ttyFAKE"))
    fake_serial.instances[0].fail_reads = True

    with pytest.raises(TransportError):
        ProtocolEngine(transport).send("PA")
