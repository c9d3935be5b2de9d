"""
Ruska pressure gauge support: read-command catalogue, serial frame decoding and
the command/response engine.

The acquisition runner lives in ``pressure_integrity.ruska.runner`` and is not
re-exported here, since it depends on the stream and estimator modules that in
turn build on this subpackage.
"""

from .commands import RUSKA_READ_COMMANDS, Command, CommandRequest, IntParameter, ParameterError, get_command
from .config import RetryPolicy, RigConfig, ToleranceConfig, load_config
from .frames import Checksum, CorruptFrame, FrameDecoder, FrameTooLarge, FramingMode, RawFrame, crc16_ccitt
from .protocol import (
    Busy,
    Cancelled,
    CommandFailed,
    DecodedReading,
    ProtocolEngine,
    ProtocolError,
    TransportError,
)
from .transport import LoopbackTransport, SerialSettings, SerialTransport

__all__ = [
    "RUSKA_READ_COMMANDS",
    "Command",
    "CommandRequest",
    "IntParameter",
    "ParameterError",
    "get_command",
    "RetryPolicy",
    "RigConfig",
    "ToleranceConfig",
    "load_config",
    "Checksum",
    "CorruptFrame",
    "FrameDecoder",
    "FrameTooLarge",
    "FramingMode",
    "RawFrame",
    "crc16_ccitt",
    "Busy",
    "Cancelled",
    "CommandFailed",
    "DecodedReading",
    "ProtocolEngine",
    "ProtocolError",
    "TransportError",
    "LoopbackTransport",
    "SerialSettings",
    "SerialTransport",
]
