"""A queued Modbus RTU/ASCII client working over an exchangeable serial transport."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .errors import Error, ModbusError
from .message import Message, make_error

DEFAULT_TIMEOUT = 2000
DEFAULT_ASCII_TIMEOUT = 1000
DEFAULT_INTERVAL_US = 2000
DEFAULT_QUEUE_LIMIT = 100

_BROADCAST_MARK = 0xBC000000

RTSCallback = Callable[[bool], None]
ResponseHandler = Callable[[Message, int], None]
ErrorHandler = Callable[[int, int], None]


class Transport(ABC):
    """The serial line a client talks over."""

    @abstractmethod
    def send(self, msg: Message, use_ascii: bool) -> None:
        """Frame and write one request to the bus."""

    @abstractmethod
    def receive(self, timeout: int, use_ascii: bool, skip_leading_zero: bool) -> Message:
        """Read one response within timeout milliseconds.

        Failures are reported by raising ModbusError, or by returning a
        one-byte message holding the error code.
        """


@dataclass(eq=False)
class RequestEntry:
    """A request waiting in the client's queue."""

    token: int
    msg: Message
    is_sync_request: bool = False


def _is_broadcast(entry: RequestEntry) -> bool:
    return entry.msg.server_id() == 0 and (entry.token & 0xFF000000) == _BROADCAST_MARK


class ModbusClientRTU:
    """Queues Modbus requests and sends them one by one over a transport.

    Responses to asynchronous requests go to ``on_response(msg, token)`` if set,
    else to ``on_data(msg, token)`` or ``on_error(error, token)``.
    """

    def __init__(
        self,
        transport: Transport,
        rts: Optional[RTSCallback] = None,
        queue_limit: int = DEFAULT_QUEUE_LIMIT,
    ) -> None:
        self._transport = transport
        self._rts: RTSCallback = rts if rts is not None else (lambda level: None)
        self._queue_limit = int(queue_limit)
        self._queue: Deque[RequestEntry] = deque()
        self._cond = threading.Condition(threading.RLock())
        self._bus_lock = threading.Lock()
        self._sync_responses: Dict[int, Message] = {}
        self._current: Optional[RequestEntry] = None
        self._interval_us = DEFAULT_INTERVAL_US
        self._last_activity = time.monotonic()
        self._timeout = DEFAULT_TIMEOUT
        self._use_ascii = False
        self._skip_leading_zero = False
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.message_count = 0
        self.error_count = 0
        self.on_response: Optional[ResponseHandler] = None
        self.on_data: Optional[ResponseHandler] = None
        self.on_error: Optional[ErrorHandler] = None
        self._rts(False)

    # ----- life cycle ---------------------------------------------------------

    def begin(self, interval: int = 0) -> None:
        """Start the background worker; interval is the bus quiet time in microseconds."""
        self.end()
        self._rts(False)
        if self._interval_us < interval:
            self._interval_us = int(interval)
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="ModbusRTUclient", daemon=True)
        self._worker.start()

    def end(self) -> None:
        """Stop the background worker and drop all queued requests."""
        worker = self._worker
        if worker is None:
            return
        self._stop.set()
        with self._cond:
            self._queue.clear()
            self._cond.notify_all()
        if worker is not threading.current_thread():
            worker.join()
        self._worker = None

    def __enter__(self) -> ModbusClientRTU:
        self.begin()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.end()

    @property
    def interval(self) -> int:
        """Bus quiet time in microseconds."""
        return self._interval_us

    @property
    def timeout(self) -> int:
        """Response timeout in milliseconds."""
        return self._timeout

    # ----- settings -----------------------------------------------------------

    def set_timeout(self, timeout: int) -> None:
        """Set the response timeout in milliseconds."""
        self._timeout = int(timeout)

    def use_modbus_ascii(self, timeout: int = DEFAULT_ASCII_TIMEOUT) -> None:
        """Switch to Modbus ASCII framing and its timeout."""
        self._use_ascii = True
        self._timeout = int(timeout)

    def use_modbus_rtu(self) -> None:
        """Switch to Modbus RTU framing."""
        self._use_ascii = False

    def is_modbus_ascii(self) -> bool:
        """Tell whether ASCII framing is in use."""
        return self._use_ascii

    def skip_leading_zero(self, on_off: bool = True) -> None:
        """Have the transport drop a leading 0x00 byte of responses."""
        self._skip_leading_zero = bool(on_off)

    # ----- queue --------------------------------------------------------------

    def pending_requests(self) -> int:
        """Return the number of requests not yet finished."""
        with self._cond:
            return len(self._queue)

    def clear_queue(self) -> None:
        """Drop all requests still waiting."""
        with self._cond:
            self._queue.clear()
            self._cond.notify_all()

    def _add_to_queue(self, entry: RequestEntry) -> bool:
        with self._cond:
            accepted = len(self._queue) < self._queue_limit
            if accepted:
                self._queue.append(entry)
            self.message_count += 1
            self._cond.notify_all()
        return accepted

    def add_request(self, msg: Message, token: int) -> None:
        """Queue a request; raise ModbusError if the queue is full."""
        msg = Message(msg)
        if not msg:
            return
        if not self._add_to_queue(RequestEntry(int(token), msg)):
            raise ModbusError(Error.REQUEST_QUEUE_FULL)

    def sync_request(self, msg: Message, token: int) -> Message:
        """Send a request and wait for its response, errors included."""
        msg = Message(msg)
        if not msg:
            return make_error(msg.server_id(), msg.function_code(), Error.EMPTY_MESSAGE)
        entry = RequestEntry(int(token), msg, True)
        if not self._add_to_queue(entry):
            return make_error(msg.server_id(), msg.function_code(), Error.REQUEST_QUEUE_FULL)
        return self._wait_sync(entry)

    def add_broadcast_message(self, data: bytes) -> None:
        """Queue a fire-and-forget message to all servers on the bus."""
        data = bytes(data)
        if not 0 < len(data) < 254:
            raise ModbusError(Error.BROADCAST_ERROR)
        token = (int(time.monotonic() * 1000) & 0xFFFFFF) | _BROADCAST_MARK
        if not self._add_to_queue(RequestEntry(token, Message(b"\x00" + data))):
            raise ModbusError(Error.REQUEST_QUEUE_FULL)

    def _still_pending(self, entry: RequestEntry) -> bool:
        return self._current is entry or any(e is entry for e in self._queue)

    def _wait_sync(self, entry: RequestEntry) -> Message:
        while True:
            with self._cond:
                if entry.token in self._sync_responses and not self._still_pending(entry):
                    return self._sync_responses.pop(entry.token)
                if not self._still_pending(entry):
                    return make_error(entry.msg.server_id(), entry.msg.function_code(), Error.TIMEOUT)
                worker = self._worker
                if worker is not None and worker.is_alive():
                    self._cond.wait(0.05)
                    continue
            self.process_next()

    # ----- processing ---------------------------------------------------------

    def process_next(self) -> bool:
        """Run the transaction of the first queued request; tell whether there was one."""
        with self._bus_lock:
            with self._cond:
                if not self._queue:
                    return False
                entry = self._queue[0]
                self._current = entry
            try:
                self._transact(entry)
            finally:
                with self._cond:
                    if self._queue and self._queue[0] is entry:
                        self._queue.popleft()
                    self._current = None
                    self._cond.notify_all()
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            if not self.process_next():
                with self._cond:
                    if not self._queue and not self._stop.is_set():
                        self._cond.wait(0.01)

    def _wait_quiet(self) -> None:
        remaining = self._last_activity + self._interval_us / 1_000_000 - time.monotonic()
        if remaining > 0:
            time.sleep(remaining)

    def _transact(self, entry: RequestEntry) -> None:
        request = entry.msg
        self._wait_quiet()
        self._rts(True)
        try:
            self._transport.send(request, self._use_ascii)
        finally:
            self._rts(False)
            self._last_activity = time.monotonic()

        if _is_broadcast(entry):
            return

        sid, fc = request.server_id(), request.function_code()
        try:
            response = Message(
                self._transport.receive(self._timeout, self._use_ascii, self._skip_leading_zero)
            )
        except ModbusError as exc:
            response = make_error(sid, fc, int(exc.error))
        self._last_activity = time.monotonic()

        if len(response) > 1:
            if response.server_id() != sid:
                response = make_error(sid, fc, Error.SERVER_ID_MISMATCH)
            elif (response.function_code() & 0x7F) != fc:
                response = make_error(sid, fc, Error.FC_MISMATCH)
        else:
            code = response[0] if response else Error.TIMEOUT
            response = make_error(sid, fc, code)

        if response.error() != Error.SUCCESS:
            with self._cond:
                self.error_count += 1

        self._dispatch(entry, response)

    def _dispatch(self, entry: RequestEntry, response: Message) -> None:
        if entry.is_sync_request:
            with self._cond:
                self._sync_responses[entry.token] = response
                self._cond.notify_all()
        elif self.on_response is not None:
            self.on_response(response, entry.token)
        elif response.error() == Error.SUCCESS:
            if self.on_data is not None:
                self.on_data(response, entry.token)
        elif self.on_error is not None:
            self.on_error(response.error(), entry.token)