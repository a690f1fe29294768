"""Modbus error codes and the exception that carries them."""

from __future__ import annotations

from enum import IntEnum


class Error(IntEnum):
    """Modbus exception codes and communication error codes."""

    SUCCESS = 0x00
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SERVER_DEVICE_BUSY = 0x06
    NEGATIVE_ACKNOWLEDGE = 0x07
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAIL = 0x0A
    GATEWAY_TARGET_NO_RESP = 0x0B
    TIMEOUT = 0xE0
    INVALID_SERVER = 0xE1
    CRC_ERROR = 0xE2
    FC_MISMATCH = 0xE3
    SERVER_ID_MISMATCH = 0xE4
    PACKET_LENGTH_ERROR = 0xE5
    PARAMETER_COUNT_ERROR = 0xE6
    PARAMETER_LIMIT_ERROR = 0xE7
    REQUEST_QUEUE_FULL = 0xE8
    ILLEGAL_IP_OR_PORT = 0xE9
    IP_CONNECTION_FAILED = 0xEA
    TCP_HEAD_MISMATCH = 0xEB
    EMPTY_MESSAGE = 0xEC
    ASCII_FRAME_ERR = 0xED
    ASCII_CRC_ERR = 0xEE
    ASCII_INVALID_CHAR = 0xEF
    BROADCAST_ERROR = 0xF0
    UNDEFINED_ERROR = 0xFF

    def text(self) -> str:
        """Return the human readable description of this error."""
        return _TEXTS.get(self, _UNSPECIFIED)


_UNSPECIFIED = "Unspecified error"

_TEXTS = {
    Error.SUCCESS: "Success",
    Error.ILLEGAL_FUNCTION: "Illegal function code",
    Error.ILLEGAL_DATA_ADDRESS: "Illegal data address",
    Error.ILLEGAL_DATA_VALUE: "Illegal data value",
    Error.SERVER_DEVICE_FAILURE: "Server device failure",
    Error.ACKNOWLEDGE: "Acknowledge",
    Error.SERVER_DEVICE_BUSY: "Server device busy",
    Error.NEGATIVE_ACKNOWLEDGE: "Negative acknowledge",
    Error.MEMORY_PARITY_ERROR: "Memory parity error",
    Error.GATEWAY_PATH_UNAVAIL: "Gateway path unavailable",
    Error.GATEWAY_TARGET_NO_RESP: "Gateway target not responding",
    Error.TIMEOUT: "Timeout",
    Error.INVALID_SERVER: "Invalid server",
    Error.CRC_ERROR: "CRC check error",
    Error.FC_MISMATCH: "Function code mismatch",
    Error.SERVER_ID_MISMATCH: "Server ID mismatch",
    Error.PACKET_LENGTH_ERROR: "Packet length error",
    Error.PARAMETER_COUNT_ERROR: "Wrong # of parameters",
    Error.PARAMETER_LIMIT_ERROR: "Parameter out of bounds",
    Error.REQUEST_QUEUE_FULL: "Request queue full",
    Error.ILLEGAL_IP_OR_PORT: "Illegal IP or port",
    Error.IP_CONNECTION_FAILED: "IP connection failed",
    Error.TCP_HEAD_MISMATCH: "TCP header mismatch",
    Error.EMPTY_MESSAGE: "Incomplete request",
    Error.ASCII_FRAME_ERR: "Invalid ASCII frame",
    Error.ASCII_CRC_ERR: "Invalid ASCII CRC",
    Error.ASCII_INVALID_CHAR: "Invalid ASCII character",
    Error.BROADCAST_ERROR: "Broadcast data invalid",
}


def error_text(code: int) -> str:
    """Return the description for any error code, known or not."""
    try:
        return Error(code).text()
    except ValueError:
        return _UNSPECIFIED


class ModbusError(Exception):
    """An exception carrying a Modbus error code."""

    def __init__(self, error: int = Error.SUCCESS) -> None:
        code = int(error)
        if not 0 <= code <= 0xFF:
            raise ValueError(f"error code out of range: {code}")
        try:
            self.error: int = Error(code)
        except ValueError:
            self.error = code
        super().__init__(error_text(code))

    def __int__(self) -> int:
        return int(self.error)

    def __str__(self) -> str:
        return error_text(self.error)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ModbusError):
            return int(self.error) == int(other.error)
        if isinstance(other, int):
            return int(self.error) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(int(self.error))

    def __repr__(self) -> str:
        return f"ModbusError(0x{int(self.error):02X})"