from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl


class PayloadKind(str, Enum):
    OBJECT = "object"
    ARRAY = "array"
    SCALAR = "scalar"


class PayloadParseError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class StructuredValue:
    """Inbound webhook body after parsing.

    ``kind`` is the tag consumers match on; ``value`` holds the decoded JSON
    value (dict for objects, list for arrays, anything else for scalars).
    """

    kind: PayloadKind
    value: Any

    @classmethod
    def wrap(cls, value: Any) -> StructuredValue:
        if isinstance(value, dict):
            return cls(PayloadKind.OBJECT, value)
        if isinstance(value, list):
            return cls(PayloadKind.ARRAY, value)
        return cls(PayloadKind.SCALAR, value)

    @property
    def is_container(self) -> bool:
        return self.kind in (PayloadKind.OBJECT, PayloadKind.ARRAY)

    def get(self, key: str, default: Any = None) -> Any:
        if self.kind is not PayloadKind.OBJECT:
            return default
        return self.value.get(key, default)

    def render(self) -> str:
        return json.dumps(self.value, ensure_ascii=False, indent=2)


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadParseError("Payload is not valid UTF-8") from exc


def _parse_json_container(text: str) -> StructuredValue:
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PayloadParseError(f"Invalid JSON: {exc.msg}") from exc
    value = StructuredValue.wrap(decoded)
    if not value.is_container:
        raise PayloadParseError("Payload must be a JSON object or array")
    return value


def parse_payload(raw: bytes, content_type: str | None = None) -> StructuredValue:
    """Parse a webhook body into a StructuredValue.

    JSON bodies must decode to an object or array. Form bodies become an
    object. Text and XML bodies are tried as JSON and otherwise wrapped as
    ``{"raw_content": ..., "content_type": ...}`` so nothing is dropped.
    """
    content_type = (content_type or "").lower()
    text = _decode(raw)

    if "application/json" in content_type or content_type.endswith("+json"):
        return _parse_json_container(text)

    if "application/x-www-form-urlencoded" in content_type:
        return StructuredValue(PayloadKind.OBJECT, dict(parse_qsl(text, keep_blank_values=True)))

    stripped = text.strip()
    if not stripped:
        raise PayloadParseError("Empty payload")
    if stripped[0] in "{[":
        try:
            return _parse_json_container(stripped)
        except PayloadParseError:
            if not content_type:
                raise
    if not content_type:
        raise PayloadParseError("Payload must be a JSON object or array")
    return StructuredValue(
        PayloadKind.OBJECT,
        {"raw_content": text, "content_type": content_type},
    )


def cap_payload(raw: bytes, max_bytes: int) -> str:
    """Stored copy of the raw body, truncated on a UTF-8 boundary."""
    if len(raw) <= max_bytes:
        return raw.decode("utf-8", errors="replace")
    return raw[:max_bytes].decode("utf-8", errors="ignore")
