# modbridge

Modbus building blocks in plain Python:

- `modbridge.errors`: the `Error` codes used by Modbus and by this package,
  with readable text for each code (`Error.text()`, `error_text()`), and the
  `ModbusError` exception.
- `modbridge.message`: `Message`, an immutable Modbus frame with access to the
  server ID, the function code and the error code, plus `make_error()` to build
  error responses.
- `modbridge.rtu_client`: `ModbusClientRTU`, a queued Modbus RTU/ASCII client
  that works over any `Transport` you supply. It handles synchronous and
  asynchronous requests as well as broadcasts.
- `modbridge.bridge`: `ModbusBridge`, which maps local alias server IDs onto
  servers reached through attached clients. It can allow or deny function codes
  for each alias and apply request and response filters.

## Installation

```
pip install modbridge
```

## Messages

```python
from modbridge.message import Message, make_error
from modbridge.errors import Error

request = Message(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))
request.server_id()        # 1
request.function_code()    # 3

reply = make_error(1, 0x03, Error.ILLEGAL_DATA_ADDRESS)
bytes(reply)               # b'\x01\x83\x02'
reply.error().text()       # 'Illegal data address'
```

## Bridging

```python
from modbridge.bridge import ModbusBridge
from modbridge.message import Message

bridge = ModbusBridge()
# Requests for alias 3 go to server 1, reached through `client`.
bridge.attach_server(3, 1, 0x03, client, None, 0)
bridge.deny_function_code(3, 0x04)

response = bridge.local_request(Message(bytes([3, 3, 0, 3, 0, 2])))
```

A request for an alias the bridge does not know gets an `INVALID_SERVER`
error response. A request with a denied function code gets
`ILLEGAL_FUNCTION`. Calling the configuration methods with an alias that was
never attached raises `BridgeError`.

## RTU client

`ModbusClientRTU` takes a `Transport` object that sends and receives frames.
Requests go into a queue with a limit on its length. `process_next()` handles
one queued request, and `begin()` starts a background worker that keeps
processing the queue until `end()` is called.

## Tests

```
pip install modbridge[test]
pytest
```