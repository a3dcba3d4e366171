"""Text formatting shared by the command-line client's output."""

from __future__ import annotations

import time
from collections.abc import Sequence

_NANOS_PER_SECOND = 1_000_000_000
_INTERNAL_TOPIC_NAMES = frozenset({"/tf", "/tf_static", "/rosout"})


def format_bytes(num_bytes: float) -> str:
    """Render a byte count with a decimal (SI) unit."""
    if num_bytes >= 1_000_000.0:
        return f"{num_bytes / 1_000_000.0:.2f} MB"
    if num_bytes >= 1000.0:
        return f"{num_bytes / 1000.0:.2f} KB"
    return f"{num_bytes:.0f} B"


def format_rate(bytes_per_second: float) -> str:
    """Render a bandwidth figure, e.g. ``"1.20 KB/s"``."""
    return f"{format_bytes(bytes_per_second)}/s"


def full_node_name(namespace: str, name: str) -> str:
    """Join a node namespace and name without doubling the root slash."""
    if namespace == "/":
        return f"/{name}"
    return f"{namespace}/{name}"


def format_types(type_names: Sequence[str]) -> str:
    """Comma-separated type names, or ``"-"`` when there are none."""
    if not type_names:
        return "-"
    return ", ".join(type_names)


def pluralize(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def is_internal_topic(name: str, local_only: bool, subscription_count: int) -> bool:
    """Whether a topic belongs in the "Internal topics" section of a listing.

    Local-only topics, transform and logging topics, parameter events, topics
    with a hidden (underscore-prefixed) segment and topics nobody subscribes
    to are all internal.
    """
    if local_only:
        return True
    if name in _INTERNAL_TOPIC_NAMES or name.endswith("/parameter_events"):
        return True
    if any(segment.startswith("_") for segment in name.split("/") if segment):
        return True
    return subscription_count == 0


def format_info_log(target: str, message: str, now: int | None = None) -> str:
    """Format an info log line stamped with ``now``.

    ``now`` is nanoseconds since the Unix epoch; the current time is used when
    it is omitted. Times before the epoch are shown as zero.
    """
    if now is None:
        now = time.time_ns()
    now = max(now, 0)
    secs, nanos = divmod(now, _NANOS_PER_SECOND)
    return f"[INFO] [{secs}.{nanos:09d}] [{target}]: {message}"