from __future__ import annotations

import pytest

from utils.payload import PayloadKind, PayloadParseError, cap_payload, parse_payload


def test_json_object_and_array() -> None:
    obj = parse_payload(b'{"title": "Disk full"}', "application/json")
    assert obj.kind is PayloadKind.OBJECT
    assert obj.get("title") == "Disk full"

    arr = parse_payload(b"[1, 2]", "application/json; charset=utf-8")
    assert arr.kind is PayloadKind.ARRAY
    assert arr.get("title") is None


@pytest.mark.parametrize("body", [b"{not json", b'"just a string"', b"42", b""])
def test_json_content_type_requires_container(body: bytes) -> None:
    with pytest.raises(PayloadParseError):
        parse_payload(body, "application/json")


def test_form_body_becomes_object() -> None:
    value = parse_payload(b"title=Alert&priority=high", "application/x-www-form-urlencoded")
    assert value.kind is PayloadKind.OBJECT
    assert value.value == {"title": "Alert", "priority": "high"}


def test_text_body_is_wrapped() -> None:
    value = parse_payload(b"server down", "text/plain")
    assert value.value == {"raw_content": "server down", "content_type": "text/plain"}


def test_text_body_that_is_json_is_parsed() -> None:
    value = parse_payload(b'{"a": 1}', "text/plain")
    assert value.value == {"a": 1}


def test_missing_content_type_requires_json() -> None:
    assert parse_payload(b'{"a": 1}').value == {"a": 1}
    with pytest.raises(PayloadParseError):
        parse_payload(b"plain words")


def test_invalid_utf8_is_rejected() -> None:
    with pytest.raises(PayloadParseError):
        parse_payload(b"\xff\xfe", "application/json")


def test_cap_payload_truncates_on_character_boundary() -> None:
    raw = "é".encode("utf-8") * 10
    capped = cap_payload(raw, 5)
    assert capped == "éé"
    assert cap_payload(b"short", 100) == "short"
