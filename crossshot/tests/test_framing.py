from __future__ import annotations

import json

import pytest

from crossshot.framing import HEADER_SCAN_LIMIT, encode_frame, parse_frame

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_header_and_payload_are_split_at_first_line_feed() -> None:
    frame = parse_frame(b'{"filename": "a.png"}\n' + PNG_MAGIC + b"body")

    assert frame.header == {"filename": "a.png"}
    assert frame.payload == PNG_MAGIC + b"body"


def test_message_without_line_feed_is_all_payload() -> None:
    frame = parse_frame(b"just bytes")

    assert frame.header == {}
    assert frame.payload == b"just bytes"


def test_binary_prefix_before_line_feed_is_not_a_header() -> None:
    message = PNG_MAGIC + b"more\nbytes"

    frame = parse_frame(message)

    assert frame.header == {}
    assert frame.payload == message


def test_line_feed_past_scan_limit_is_ignored() -> None:
    header = json.dumps({"pad": "a" * HEADER_SCAN_LIMIT}).encode()
    message = header + b"\npayload"

    frame = parse_frame(message)

    assert frame.header == {}
    assert frame.payload == message


def test_non_object_json_line_is_not_a_header() -> None:
    frame = parse_frame(b"[1, 2]\nrest")

    assert frame.header == {}
    assert frame.payload == b"[1, 2]\nrest"


def test_text_messages_are_utf8_encoded() -> None:
    frame = parse_frame('{"filename": "ü.txt"}\nhallo')

    assert frame.header == {"filename": "ü.txt"}
    assert frame.payload == b"hallo"


def test_encode_frame_round_trips_header() -> None:
    data = encode_frame({"filename": "x.png", "deviceInfo": {"model": "Pixel 7"}}, b"\x00\n\x01")

    frame = parse_frame(data)

    assert frame.header["deviceInfo"] == {"model": "Pixel 7"}
    assert frame.payload == b"\x00\n\x01"


def test_encode_frame_rejects_oversized_header() -> None:
    with pytest.raises(ValueError):
        encode_frame({"pad": "a" * HEADER_SCAN_LIMIT}, b"")


def test_json_string_line_is_not_a_header() -> None:
    message = b'"meta"\n' + PNG_MAGIC

    frame = parse_frame(message)

    assert frame.header == {}
    assert frame.payload == message
