"""
Alertmanager webhook payload models.

Decodes the JSON body Alertmanager POSTs to a webhook receiver into
immutable dataclasses. Decoding is lenient about absent keys and JSON null
(both become zero values) and strict about types: a label value that is not
a string, or a timestamp that does not parse, is a decode error.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

_EMPTY: Mapping[str, str] = MappingProxyType({})

# Go's time.Time zero value, sent by Alertmanager for unset endsAt
_GO_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_FRACTION_RE = re.compile(r"(\.\d+)")


class PayloadDecodeError(ValueError):
    """Raised when a webhook body cannot be decoded into an AlertPayload."""
    pass


@dataclass(frozen=True)
class AlertEntry:
    """A single alert inside a notification."""

    status: str = ""
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    generator_url: str = ""
    labels: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    annotations: Mapping[str, str] = field(default_factory=lambda: _EMPTY)


@dataclass(frozen=True)
class AlertPayload:
    """A full Alertmanager notification (one webhook call)."""

    receiver: str = ""
    status: str = ""
    external_url: str = ""
    common_labels: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    group_labels: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    common_annotations: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    alerts: Tuple[AlertEntry, ...] = ()


def parse_timestamp(value: Any, name: str) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp.

    Returns None for null, empty string and Go's zero time. Fractions finer
    than microseconds (Alertmanager emits nanoseconds) are truncated.
    Timestamps without an offset are taken as UTC.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise PayloadDecodeError(f"{name}: expected RFC 3339 string, got {type(value).__name__}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[1:7].ljust(6, "0"), text, count=1)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise PayloadDecodeError(f"{name}: invalid timestamp {value!r}: {e}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed == _GO_ZERO_TIME:
        return None
    return parsed


def _get_str(data: Dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PayloadDecodeError(f"{where}{key}: expected string, got {type(value).__name__}")
    return value


def _get_map(data: Dict[str, Any], key: str, where: str) -> Mapping[str, str]:
    value = data.get(key)
    if value is None:
        return _EMPTY
    if not isinstance(value, dict):
        raise PayloadDecodeError(f"{where}{key}: expected object, got {type(value).__name__}")
    for k, v in value.items():
        if not isinstance(v, str):
            raise PayloadDecodeError(
                f"{where}{key}.{k}: expected string value, got {type(v).__name__}"
            )
    return MappingProxyType(dict(value))


def _decode_alert(data: Any, index: int) -> AlertEntry:
    where = f"alerts[{index}]."
    if not isinstance(data, dict):
        raise PayloadDecodeError(f"alerts[{index}]: expected object, got {type(data).__name__}")
    return AlertEntry(
        status=_get_str(data, "status", where),
        starts_at=parse_timestamp(data.get("startsAt"), where + "startsAt"),
        ends_at=parse_timestamp(data.get("endsAt"), where + "endsAt"),
        generator_url=_get_str(data, "generatorURL", where),
        labels=_get_map(data, "labels", where),
        annotations=_get_map(data, "annotations", where),
    )


def payload_from_dict(data: Any) -> AlertPayload:
    """Build an AlertPayload from already-parsed JSON."""
    if data is None:
        return AlertPayload()
    if not isinstance(data, dict):
        raise PayloadDecodeError(f"payload: expected object, got {type(data).__name__}")

    alerts = data.get("alerts")
    if alerts is None:
        alerts = []
    if not isinstance(alerts, list):
        raise PayloadDecodeError(f"alerts: expected array, got {type(alerts).__name__}")

    return AlertPayload(
        receiver=_get_str(data, "receiver", ""),
        status=_get_str(data, "status", ""),
        external_url=_get_str(data, "externalURL", ""),
        common_labels=_get_map(data, "commonLabels", ""),
        group_labels=_get_map(data, "groupLabels", ""),
        common_annotations=_get_map(data, "commonAnnotations", ""),
        alerts=tuple(_decode_alert(a, i) for i, a in enumerate(alerts)),
    )


def decode_payload(raw: bytes) -> AlertPayload:
    """
    Decode a webhook request body.

    Raises:
        PayloadDecodeError: invalid JSON or a field of the wrong type
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadDecodeError(f"invalid JSON: {e}") from e
    return payload_from_dict(data)
