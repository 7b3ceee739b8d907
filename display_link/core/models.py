"""Wire models for display directives and power readings."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

POWER_READING_TYPE = "power.reading"
HELLO_TYPE = "hello"
STATUS_TYPE = "status"

FONT_SIZES = frozenset({"small", "medium", "large", "xlarge"})
ANIMATIONS = frozenset({"none", "fade", "slide", "pulse"})
SOUNDS = frozenset({"none", "default", "alert", "chime"})
PRIORITIES = frozenset({"low", "normal", "high"})


class MessageDecodeError(ValueError):
    """Raised when an inbound payload cannot be decoded into a model."""


class MessageKind(str, Enum):
    """Kind of a display directive."""

    TEXT = "text"
    IMAGE = "image"
    ALERT = "alert"
    CLEAR = "clear"
    CONFIG = "config"


def _optional_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MessageDecodeError(f"Field {key!r} must be a string")
    return value


def _optional_choice(
    payload: Mapping[str, Any], key: str, choices: frozenset[str]
) -> Optional[str]:
    value = _optional_str(payload, key)
    if value is not None and value not in choices:
        raise MessageDecodeError(f"Unsupported {key} value: {value!r}")
    return value


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


@dataclass(slots=True, frozen=True)
class MessageStyle:
    background_color: Optional[str] = None
    text_color: Optional[str] = None
    font_size: Optional[str] = None
    animation: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "MessageStyle":
        if not isinstance(payload, Mapping):
            raise MessageDecodeError("Field 'style' must be an object")
        return cls(
            background_color=_optional_str(payload, "backgroundColor"),
            text_color=_optional_str(payload, "textColor"),
            font_size=_optional_choice(payload, "fontSize", FONT_SIZES),
            animation=_optional_choice(payload, "animation", ANIMATIONS),
        )

    def as_dict(self) -> Dict[str, str]:
        fields = {
            "backgroundColor": self.background_color,
            "textColor": self.text_color,
            "fontSize": self.font_size,
            "animation": self.animation,
        }
        return {key: value for key, value in fields.items() if value is not None}


@dataclass(slots=True, frozen=True)
class DisplayMessage:
    """A single directive pushed to a display.

    ``duration_ms`` of ``None`` or ``0`` keeps the message on screen until it
    is superseded or cleared.
    """

    kind: MessageKind
    content: Optional[str] = None
    image_url: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    style: Optional[MessageStyle] = None
    sound: Optional[str] = None
    duration_ms: Optional[int] = None
    priority: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "DisplayMessage":
        if not isinstance(payload, Mapping):
            raise MessageDecodeError("Display message must be a JSON object")

        raw_kind = payload.get("type")
        try:
            kind = MessageKind(raw_kind)
        except ValueError:
            raise MessageDecodeError(f"Unsupported message type: {raw_kind!r}") from None

        duration = payload.get("duration", payload.get("durationMs"))
        if duration is not None:
            if not _is_number(duration) or duration < 0:
                raise MessageDecodeError(
                    "Field 'duration' must be a finite non-negative number"
                )
            duration = int(duration)

        style_payload = payload.get("style")
        style = MessageStyle.from_dict(style_payload) if style_payload is not None else None

        return cls(
            kind=kind,
            content=_optional_str(payload, "content"),
            image_url=_optional_str(payload, "imageUrl"),
            title=_optional_str(payload, "title"),
            body=_optional_str(payload, "body"),
            style=style,
            sound=_optional_choice(payload, "sound", SOUNDS),
            duration_ms=duration,
            priority=_optional_choice(payload, "priority", PRIORITIES),
        )

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.kind.value}
        optional = {
            "content": self.content,
            "imageUrl": self.image_url,
            "title": self.title,
            "body": self.body,
            "sound": self.sound,
            "duration": self.duration_ms,
            "priority": self.priority,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.style is not None:
            payload["style"] = self.style.as_dict()
        return payload

    @property
    def expires(self) -> bool:
        return bool(self.duration_ms and self.duration_ms > 0)


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC3339 timestamp, accepting a trailing ``Z``."""

    if not isinstance(value, str) or not value:
        raise MessageDecodeError("Field 'timestamp' must be an RFC3339 string")
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise MessageDecodeError(f"Invalid timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        raise MessageDecodeError(f"Timestamp lacks a UTC offset: {value!r}")
    return parsed


@dataclass(slots=True, frozen=True)
class PowerReading:
    timestamp: datetime
    watts: float
    appliance_id: str
    nickname: str
    source_host: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "PowerReading":
        if not isinstance(payload, Mapping):
            raise MessageDecodeError("Power reading must be a JSON object")
        if payload.get("type") != POWER_READING_TYPE:
            raise MessageDecodeError(f"Not a power reading: {payload.get('type')!r}")

        watts = payload.get("watts")
        if not _is_number(watts):
            raise MessageDecodeError("Field 'watts' must be a finite number")

        return cls(
            timestamp=parse_timestamp(payload.get("timestamp")),
            watts=float(watts),
            appliance_id=_optional_str(payload, "applianceId") or "",
            nickname=_optional_str(payload, "nickname") or "",
            source_host=_optional_str(payload, "sourceHost"),
        )

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": POWER_READING_TYPE,
            "timestamp": self.timestamp.isoformat(),
            "watts": self.watts,
            "applianceId": self.appliance_id,
            "nickname": self.nickname,
        }
        if self.source_host is not None:
            payload["sourceHost"] = self.source_host
        return payload


def build_hello(client: str) -> Dict[str, str]:
    """Identification payload sent by a display after the push channel opens."""

    return {"type": HELLO_TYPE, "client": client}


def is_client_announcement(payload: Mapping[str, Any]) -> bool:
    return payload.get("type") in (HELLO_TYPE, STATUS_TYPE)
