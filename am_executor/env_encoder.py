"""
Alert payload -> process environment encoding.

Every notification becomes a flat list of ``NAME=VALUE`` strings:

    AMX_RECEIVER, AMX_STATUS, AMX_EXTERNAL_URL, AMX_ALERT_LEN
    AMX_LABEL_<k>, AMX_GLABEL_<k>, AMX_ANNOTATION_<k>
    AMX_ALERT_<i>_STATUS, _START, _END, _URL            (i is 1-based)
    AMX_ALERT_<i>_LABEL_<k>, AMX_ALERT_<i>_ANNOTATION_<k>

Map keys are emitted in sorted order so the same payload always encodes to
the same list. Keys are not sanitized: a label name containing ``=`` or a
NUL byte ends up in the variable name as-is.
"""

import calendar
from datetime import datetime
from typing import List, Mapping, Optional

from am_executor.alert_models import AlertPayload

ENV_PREFIX = "AMX"


def timestamp_to_str(ts: Optional[datetime]) -> str:
    """Unix seconds as a decimal string, "0" for an absent timestamp."""
    if ts is None:
        return "0"
    return str(calendar.timegm(ts.utctimetuple()))


def _map_entries(prefix: str, mapping: Mapping[str, str]) -> List[str]:
    return [f"{prefix}_{key}={mapping[key]}" for key in sorted(mapping)]


def encode(payload: AlertPayload) -> List[str]:
    """Encode a notification into environment entries."""
    env = [
        f"{ENV_PREFIX}_RECEIVER={payload.receiver}",
        f"{ENV_PREFIX}_STATUS={payload.status}",
        f"{ENV_PREFIX}_EXTERNAL_URL={payload.external_url}",
        f"{ENV_PREFIX}_ALERT_LEN={len(payload.alerts)}",
    ]
    env += _map_entries(f"{ENV_PREFIX}_LABEL", payload.common_labels)
    env += _map_entries(f"{ENV_PREFIX}_GLABEL", payload.group_labels)
    env += _map_entries(f"{ENV_PREFIX}_ANNOTATION", payload.common_annotations)

    for i, alert in enumerate(payload.alerts, start=1):
        key = f"{ENV_PREFIX}_ALERT_{i}"
        env += [
            f"{key}_STATUS={alert.status}",
            f"{key}_START={timestamp_to_str(alert.starts_at)}",
            f"{key}_END={timestamp_to_str(alert.ends_at)}",
            f"{key}_URL={alert.generator_url}",
        ]
        env += _map_entries(f"{key}_LABEL", alert.labels)
        env += _map_entries(f"{key}_ANNOTATION", alert.annotations)

    return env
