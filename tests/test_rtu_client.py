import pytest

from modbridge.errors import Error, ModbusError
from modbridge.message import Message
from modbridge.rtu_client import ModbusClientRTU, RequestEntry, Transport


def hexmsg(text):
    return Message(bytes.fromhex(text))


class FakeTransport(Transport):
    def __init__(self, responses=()):
        self.responses = list(responses)
        self.sent = []
        self.receives = []

    def send(self, msg, use_ascii):
        self.sent.append((bytes(msg), use_ascii))

    def receive(self, timeout, use_ascii, skip_leading_zero):
        self.receives.append((timeout, use_ascii, skip_leading_zero))
        item = self.responses.pop(0)
        if isinstance(item, Error):
            raise ModbusError(item)
        return hexmsg(item)


def make_client(responses=(), **kwargs):
    transport = FakeTransport(responses)
    client = ModbusClientRTU(transport, **kwargs)
    results = []
    client.on_response = lambda msg, token: results.append((token, msg))
    return client, transport, results


def test_read_one_word():
    client, transport, results = make_client(["01 03 02 1E 1F"])
    client.add_request(hexmsg("01 03 00 10 00 01"), 1)
    assert client.pending_requests() == 1
    assert client.process_next() is True
    assert results == [(1, hexmsg("01 03 02 1E 1F"))]
    assert transport.sent == [(bytes.fromhex("01 03 00 10 00 01"), False)]
    assert client.pending_requests() == 0
    assert client.process_next() is False


def test_exception_response_passed_through():
    client, _, results = make_client(["01 87 01"])
    client.add_request(hexmsg("01 07"), 6)
    client.process_next()
    assert results == [(6, hexmsg("01 87 01"))]
    assert client.error_count == 1


def test_timeout_gives_error_response():
    client, _, results = make_client([Error.TIMEOUT])
    client.add_request(hexmsg("03 07"), 7)
    client.process_next()
    assert results == [(7, hexmsg("03 87 E0"))]


def test_nil_response_user_defined_fc():
    client, _, results = make_client([Error.TIMEOUT])
    client.add_request(hexmsg("02 41"), 8)
    client.process_next()
    assert results == [(8, hexmsg("02 C1 E0"))]


def test_one_byte_receive_result_is_error_code():
    client, _, results = make_client(["E2"])
    client.add_request(hexmsg("01 03 00 10 00 01"), 2)
    client.process_next()
    assert results == [(2, hexmsg("01 83 E2"))]


def test_server_id_mismatch():
    client, _, results = make_client(["2F 03 06 11 22 33 44 55 66"])
    client.add_request(hexmsg("01 03 00 01 00 03"), 3)
    client.process_next()
    assert results == [(3, hexmsg("01 83 E4"))]


def test_function_code_mismatch():
    client, _, results = make_client(["01 04 06 11 22 33 44 55 66"])
    client.add_request(hexmsg("01 03 00 01 00 03"), 4)
    client.process_next()
    assert results == [(4, hexmsg("01 83 E3"))]


def test_data_and_error_handlers():
    client, _, _ = make_client(["01 03 02 BE EF", "01 83 02"])
    client.on_response = None
    data, errors = [], []
    client.on_data = lambda msg, token: data.append((token, msg))
    client.on_error = lambda err, token: errors.append((token, err))
    client.add_request(hexmsg("01 03 00 10 00 01"), 10)
    client.add_request(hexmsg("01 03 00 2D 00 01"), 11)
    client.process_next()
    client.process_next()
    assert data == [(10, hexmsg("01 03 02 BE EF"))]
    assert errors == [(11, Error.ILLEGAL_DATA_ADDRESS)]


def test_queue_full_raises_and_counts():
    client, _, _ = make_client(queue_limit=2)
    client.add_request(hexmsg("01 07"), 1)
    client.add_request(hexmsg("01 07"), 2)
    with pytest.raises(ModbusError) as info:
        client.add_request(hexmsg("01 07"), 3)
    assert info.value.error == Error.REQUEST_QUEUE_FULL
    assert client.pending_requests() == 2
    assert client.message_count == 3


def test_empty_request_is_ignored():
    client, _, _ = make_client()
    client.add_request(Message(), 1)
    assert client.pending_requests() == 0
    assert client.message_count == 0


def test_clear_queue():
    client, _, _ = make_client()
    client.add_request(hexmsg("01 07"), 1)
    client.add_request(hexmsg("01 07"), 2)
    client.clear_queue()
    assert client.pending_requests() == 0


def test_broadcast_is_sent_without_receive():
    client, transport, results = make_client()
    client.add_broadcast_message(b"Broadcast data #1\x00")
    assert client.process_next() is True
    assert transport.sent == [(b"\x00Broadcast data #1\x00", False)]
    assert transport.receives == []
    assert results == []


@pytest.mark.parametrize("data", [b"", bytes(254)])
def test_broadcast_length_limits(data):
    client, _, _ = make_client()
    with pytest.raises(ModbusError) as info:
        client.add_broadcast_message(data)
    assert info.value.error == Error.BROADCAST_ERROR


def test_request_to_server_zero_with_normal_token_waits_for_answer():
    client, transport, results = make_client(["00 07 01"])
    client.add_request(hexmsg("00 07"), 5)
    client.process_next()
    assert len(transport.receives) == 1
    assert results == [(5, hexmsg("00 07 01"))]


def test_sync_request_inline():
    client, _, _ = make_client(["01 03 08 00 01 02 03 04 05 06 07"])
    response = client.sync_request(hexmsg("01 03 00 01 00 04"), 20)
    assert response == hexmsg("01 03 08 00 01 02 03 04 05 06 07")
    assert client.pending_requests() == 0


def test_sync_request_queue_full():
    client, _, _ = make_client(queue_limit=1)
    client.add_request(hexmsg("01 07"), 1)
    assert client.sync_request(hexmsg("01 03 00 01 00 01"), 2) == hexmsg("01 83 E8")


def test_sync_request_with_worker_thread():
    client, _, _ = make_client(["01 03 02 BE EF"])
    client.begin()
    try:
        response = client.sync_request(hexmsg("01 03 00 10 00 01"), 30)
    finally:
        client.end()
    assert response == hexmsg("01 03 02 BE EF")


def test_context_manager_processes_async_requests():
    client, _, results = make_client(["01 06 00 10 BE EF"])
    with client:
        client.add_request(hexmsg("01 06 00 10 BE EF"), 9)
        client.sync_request(hexmsg("01 06 00 10 BE EF"), 99) if False else None
        for _ in range(200):
            if results:
                break
            import time
            time.sleep(0.01)
    assert results == [(9, hexmsg("01 06 00 10 BE EF"))]


def test_rts_toggles():
    levels = []
    client, _, _ = make_client(["01 03 02 1E 1F", "01 03 02 1E 1F"], rts=levels.append)
    assert levels == [False]
    client.add_request(hexmsg("01 03 00 10 00 01"), 1)
    client.add_request(hexmsg("01 03 00 10 00 01"), 2)
    client.process_next()
    client.process_next()
    assert levels.count(True) == 2
    assert levels.count(False) == 3


def test_ascii_mode_settings_reach_transport():
    client, transport, _ = make_client(["01 03 02 BE EF"])
    client.use_modbus_ascii()
    client.skip_leading_zero()
    assert client.is_modbus_ascii() is True
    assert client.timeout == 1000
    client.add_request(hexmsg("01 03 00 10 00 01"), 1)
    client.process_next()
    assert transport.sent[0][1] is True
    assert transport.receives == [(1000, True, True)]
    client.use_modbus_rtu()
    assert client.is_modbus_ascii() is False


def test_set_timeout_and_interval():
    client, transport, _ = make_client(["01 07 2B"])
    client.set_timeout(500)
    assert client.timeout == 500
    client.begin(3500)
    client.end()
    assert client.interval == 3500
    client.begin(100)
    client.end()
    assert client.interval == 3500


def test_end_drops_queue():
    client, _, _ = make_client()
    client.begin()
    client.end()
    client.add_request(hexmsg("01 07"), 1)
    client.begin()
    client.end()
    assert client.pending_requests() == 0


def test_request_entry_defaults():
    entry = RequestEntry(5, hexmsg("01 07"))
    assert entry.is_sync_request is False
    assert entry.token == 5