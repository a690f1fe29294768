"""A Modbus server that forwards requests to external servers through clients."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .errors import Error
from .message import Message, make_error

ANY_SERVER = 0x00
ANY_FUNCTION_CODE = 0x00

Worker = Callable[[Message], Optional[Message]]
Filter = Callable[[Message], Message]
HostLike = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address, None]

_NO_HOST = ipaddress.IPv4Address("0.0.0.0")


class ServerType(Enum):
    """How an attached external server is reached."""

    TCP_SERVER = "tcp"
    RTU_SERVER = "rtu"


@dataclass
class ServerData:
    """Everything needed to address one external server."""

    server_id: int
    client: Any
    server_type: ServerType = ServerType.RTU_SERVER
    host: Union[ipaddress.IPv4Address, ipaddress.IPv6Address] = _NO_HOST
    port: int = 0
    request_filter: Optional[Filter] = None
    response_filter: Optional[Filter] = None


class BridgeError(LookupError):
    """Raised when an alias id is used that is not attached to the bridge."""

    def __init__(self, alias_id: int) -> None:
        self.alias_id = alias_id
        super().__init__(f"server {alias_id} not attached to bridge")


def _byte(value: int, name: str) -> int:
    value = int(value)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} out of range: {value}")
    return value


def _token() -> int:
    return time.monotonic_ns() // 1000 & 0xFFFFFFFF


class ModbusBridge:
    """A local Modbus server whose workers forward requests to attached servers.

    RTU clients are called as ``client.sync_request(msg, token)``; TCP clients
    (attached with a non-zero port) as ``client.sync_request(msg, token, host, port)``.
    """

    def __init__(self) -> None:
        self._workers: Dict[int, Dict[int, Worker]] = {}
        self._servers: Dict[int, ServerData] = {}
        self._lock = threading.RLock()
        self.message_count = 0
        self.error_count = 0

    # ----- local server part -------------------------------------------------

    def register_worker(self, server_id: int, function_code: int, worker: Worker) -> None:
        """Register a worker for a server id / function code combination."""
        server_id = _byte(server_id, "server id")
        function_code = _byte(function_code, "function code")
        with self._lock:
            self._workers.setdefault(server_id, {})[function_code] = worker

    def get_worker(self, server_id: int, function_code: int) -> Optional[Worker]:
        """Find the worker for a request, falling back to the ANY entries."""
        with self._lock:
            fcs = self._workers.get(server_id)
            if fcs is not None:
                worker = fcs.get(function_code) or fcs.get(ANY_FUNCTION_CODE)
                if worker is not None:
                    return worker
            fcs = self._workers.get(ANY_SERVER)
            if fcs is not None:
                return fcs.get(function_code) or fcs.get(ANY_FUNCTION_CODE)
        return None

    def unregister_worker(self, server_id: int, function_code: Optional[int] = None) -> bool:
        """Remove one worker, or all workers of a server; report whether any went."""
        with self._lock:
            fcs = self._workers.get(server_id)
            if fcs is None:
                return False
            if function_code is None:
                del self._workers[server_id]
                return True
            if function_code not in fcs:
                return False
            del fcs[function_code]
            if not fcs:
                del self._workers[server_id]
            return True

    def _is_server_for(self, server_id: int) -> bool:
        with self._lock:
            return server_id in self._workers or ANY_SERVER in self._workers

    def local_request(self, msg: Message) -> Message:
        """Process a request locally and return the response."""
        msg = Message(msg)
        server_id = msg.server_id()
        function_code = msg.function_code()
        with self._lock:
            self.message_count += 1
        worker = self.get_worker(server_id, function_code)
        if worker is None:
            error = Error.ILLEGAL_FUNCTION if self._is_server_for(server_id) else Error.INVALID_SERVER
            with self._lock:
                self.error_count += 1
            return make_error(server_id, function_code, error)
        response = worker(msg)
        if response is None:
            return Message()
        response = Message(response)
        if response.error() != Error.SUCCESS:
            with self._lock:
                self.error_count += 1
        return response

    # ----- bridge part -------------------------------------------------------

    def attach_server(
        self,
        alias_id: int,
        server_id: int,
        function_code: int,
        client: Any,
        host: HostLike = None,
        port: int = 0,
    ) -> None:
        """Make an external server reachable under alias_id for function_code."""
        alias_id = _byte(alias_id, "alias id")
        server_id = _byte(server_id, "server id")
        if not 0 <= int(port) <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        with self._lock:
            if alias_id not in self._servers:
                if port:
                    address = ipaddress.ip_address(host) if host is not None else _NO_HOST
                    self._servers[alias_id] = ServerData(
                        server_id, client, ServerType.TCP_SERVER, address, int(port)
                    )
                else:
                    self._servers[alias_id] = ServerData(server_id, client)
        self.add_function_code(alias_id, function_code)

    def _server(self, alias_id: int) -> ServerData:
        with self._lock:
            try:
                return self._servers[alias_id]
            except KeyError:
                raise BridgeError(alias_id) from None

    def add_function_code(self, alias_id: int, function_code: int) -> None:
        """Forward another function code to an attached server."""
        self._server(alias_id)
        self.register_worker(alias_id, function_code, self._bridge_worker)

    def deny_function_code(self, alias_id: int, function_code: int) -> None:
        """Answer a function code for an attached server with ILLEGAL_FUNCTION."""
        self._server(alias_id)
        self.register_worker(alias_id, function_code, self._deny_worker)

    def add_request_filter(self, alias_id: int, request_filter: Filter) -> None:
        """Pass requests through request_filter before forwarding them."""
        self._server(alias_id).request_filter = request_filter

    def remove_request_filter(self, alias_id: int) -> None:
        """Drop the request filter of an attached server."""
        self._server(alias_id).request_filter = None

    def add_response_filter(self, alias_id: int, response_filter: Filter) -> None:
        """Pass responses through response_filter before returning them."""
        self._server(alias_id).response_filter = response_filter

    def remove_response_filter(self, alias_id: int) -> None:
        """Drop the response filter of an attached server."""
        self._server(alias_id).response_filter = None

    def _bridge_worker(self, msg: Message) -> Message:
        alias_id = msg.server_id()
        function_code = msg.function_code()
        with self._lock:
            data = self._servers.get(alias_id) or self._servers.get(ANY_SERVER)
        if data is None:
            return make_error(alias_id, function_code, Error.INVALID_SERVER)

        if data.request_filter is not None:
            msg = Message(data.request_filter(msg))
        if data.server_id != ANY_SERVER:
            msg = msg.with_server_id(data.server_id)

        if data.server_type is ServerType.TCP_SERVER:
            response = data.client.sync_request(msg, _token(), data.host, data.port)
        else:
            response = data.client.sync_request(msg, _token())
        response = Message(response).with_server_id(alias_id)

        if response.error() != Error.SUCCESS:
            response = response.with_function_code(function_code | 0x80)
        else:
            response = response.with_function_code(function_code)

        if data.response_filter is not None:
            response = Message(data.response_filter(response))
        return response

    @staticmethod
    def _deny_worker(msg: Message) -> Message:
        return make_error(msg.server_id(), msg.function_code(), Error.ILLEGAL_FUNCTION)