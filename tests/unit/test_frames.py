"""
Unit tests for the frame codec.

Test Coverage:
- Client frame encoding as it appears on the wire
- Server message decoding, including multi-key preferences
- Rejection of empty, unknown and malformed messages
"""

import json

import pytest

from webtty.comms_core.errors import ProtocolError
from webtty.comms_core.protocol.frames import (
    Ack, Data, Geometry, Handshake, Pause, Resize, Resume, SetOption,
    SetReconnect, SetWindowTitle, decode_client, decode_server,
    encode_client, encode_preferences, encode_server,
)


class TestEncodeClient:

    def test_input(self):
        assert encode_client(Data(b"ls\r")) == b"0ls\r"

    def test_resize(self):
        message = encode_client(Resize(Geometry(rows=40, cols=120)))
        assert message[:1] == b"1"
        assert json.loads(message[1:]) == {"columns": 120, "rows": 40, "width": 0, "height": 0}

    def test_pause_resume(self):
        assert encode_client(Pause()) == b"2"
        assert encode_client(Resume()) == b"3"

    def test_ack_is_ascii_decimal(self):
        assert encode_client(Ack(12345)) == b"412345"

    def test_set_option(self):
        message = encode_client(SetOption("fontSize", 16))
        assert message[:1] == b"5"
        assert json.loads(message[1:]) == {"fontSize": 16}

    def test_handshake_is_bare_json(self):
        message = encode_client(Handshake("secret", Geometry(rows=24, cols=80)))
        assert message[:1] == b"{"
        assert json.loads(message) == {"AuthToken": "secret", "columns": 80, "rows": 24}

    def test_server_frames_cannot_be_sent_by_the_client(self):
        with pytest.raises(ProtocolError):
            encode_client(SetWindowTitle("nope"))


class TestDecodeServer:

    def test_output(self):
        assert decode_server(b"0hello") == [Data(b"hello")]

    def test_text_output_is_utf8_encoded(self):
        assert decode_server("0héllo") == [Data("héllo".encode("utf-8"))]

    def test_window_title(self):
        assert decode_server(b"1bash (host)") == [SetWindowTitle("bash (host)")]

    def test_preferences_yield_one_option_per_key(self):
        frames = decode_server(b'2{"fontSize": 16, "disableLeaveAlert": true}')
        assert frames == [SetOption("fontSize", 16), SetOption("disableLeaveAlert", True)]

    def test_empty_preferences(self):
        assert decode_server(b"2{}") == []

    def test_reconnect(self):
        assert decode_server(b"310") == [SetReconnect(10)]

    @pytest.mark.parametrize("message", [
        b"",
        b"9whatever",
        b"2not json",
        b"2[1, 2]",
        b"3soon",
        b"3-1",
        b"1\xff\xfe",
    ])
    def test_rejects_malformed_messages(self, message):
        with pytest.raises(ProtocolError):
            decode_server(message)


class TestServerSide:

    def test_decode_client_frames(self):
        assert decode_client(b"0abc") == Data(b"abc")
        assert decode_client(b"2") == Pause()
        assert decode_client(b"3") == Resume()
        assert decode_client(b"4100") == Ack(100)
        assert decode_client(b'1{"columns": 100, "rows": 30}') == Resize(Geometry(rows=30, cols=100))

    def test_decode_handshake(self):
        frame = decode_client(b'{"AuthToken": "t", "columns": 80, "rows": 24}')
        assert frame == Handshake("t", Geometry(rows=24, cols=80))

    def test_option_frame_must_have_one_key(self):
        with pytest.raises(ProtocolError):
            decode_client(b'5{"a": 1, "b": 2}')

    def test_resize_requires_positive_size(self):
        with pytest.raises(ProtocolError):
            decode_client(b'1{"columns": 0, "rows": 30}')

    @pytest.mark.parametrize("message", [b"", b"x", b"4abc"])
    def test_decode_client_rejects_malformed(self, message):
        with pytest.raises(ProtocolError):
            decode_client(message)

    def test_encode_server_frames(self):
        assert encode_server(Data(b"out")) == b"0out"
        assert encode_server(SetWindowTitle("t")) == b"1t"
        assert encode_server(SetReconnect(5)) == b"35"
        assert encode_preferences({"a": 1}) == b'2{"a": 1}'

    def test_client_frames_cannot_be_sent_by_the_server(self):
        with pytest.raises(ProtocolError):
            encode_server(Ack(1))
