"""Immutable Modbus protocol data units."""

from __future__ import annotations

from typing import Iterable, Iterator, Union

from .errors import Error

BytesLike = Union[bytes, bytearray, memoryview, Iterable[int]]


class Message:
    """A Modbus message: server id, function code and payload bytes."""

    __slots__ = ("_data",)

    def __init__(self, data: BytesLike = b"") -> None:
        if isinstance(data, Message):
            self._data = bytes(data)
        else:
            self._data = bytes(data)

    def __bytes__(self) -> bytes:
        return self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[int]:
        return iter(self._data)

    def __getitem__(self, index):
        return self._data[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Message):
            return self._data == other._data
        if isinstance(other, (bytes, bytearray, memoryview)):
            return self._data == bytes(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __repr__(self) -> str:
        return f"Message({self._data.hex(' ').upper()!r})"

    def server_id(self) -> int:
        """Return the server id, or 0 for an empty message."""
        return self._data[0] if self._data else 0

    def function_code(self) -> int:
        """Return the function code, or 0 if the message is too short."""
        return self._data[1] if len(self._data) > 1 else 0

    def error(self) -> int:
        """Return the error code of an error response, else SUCCESS."""
        if len(self._data) > 2 and self._data[1] & 0x80:
            code = self._data[2]
            try:
                return Error(code)
            except ValueError:
                return code
        return Error.SUCCESS

    def with_server_id(self, server_id: int) -> Message:
        """Return a copy with the server id replaced."""
        if not self._data:
            return self
        return Message(bytes([_byte(server_id)]) + self._data[1:])

    def with_function_code(self, function_code: int) -> Message:
        """Return a copy with the function code replaced."""
        if len(self._data) < 2:
            return self
        return Message(self._data[:1] + bytes([_byte(function_code)]) + self._data[2:])


def _byte(value: int) -> int:
    value = int(value)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"byte value out of range: {value}")
    return value


def make_error(server_id: int, function_code: int, error: int) -> Message:
    """Build an error response: server id, function code | 0x80, error code."""
    return Message(
        bytes([_byte(server_id), _byte(function_code) | 0x80, _byte(error)])
    )