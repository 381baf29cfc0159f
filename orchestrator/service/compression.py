"""
Payload compression for monitoring tool outputs.

Telemetry results carry ``monitors`` records, each with a nested ``metrics``
map. Most of their fields are bookkeeping the model never needs; removing
them keeps inline outputs and cached pages small.
"""

import logging
from typing import Any

from .output_safety import measure_size

logger = logging.getLogger(__name__)

METRIC_FIELDS_TO_REMOVE = frozenset(
    {
        "resetMetricsTime",
        "name",
        "updated",
        "type",
        "collectTime",
        "previousCollectTime",
        "previousValue",
    }
)

MONITOR_FIELDS_TO_REMOVE = frozenset({"discoveryTime", "identifyingAttributeKeys"})

# Flags only worth keeping when true
FALSE_FLAGS_TO_REMOVE = frozenset({"connector", "endpoint", "endpointHost", "is_endpoint"})

STATUS_MESSAGE_MARKER = "\n\nMessage:\n====================================\n"
STATUS_CONCLUSION_MARKER = "\n====================================\n\nConclusion:"
_CONCLUSION_PREFIX = "\n====================================\n\n"

LOG_SAVINGS_THRESHOLD = 1000

_EMPTY = object()


def deduplicate_status_information(status_info: Any) -> Any:
    """
    Drop the repeated block of a StatusInformation text.

    The text lists its result once, then again inside a ``Message:`` block.
    Keeps what precedes the message block and the trailing conclusion.
    """
    if not isinstance(status_info, str):
        return status_info

    message_idx = status_info.find(STATUS_MESSAGE_MARKER)
    conclusion_idx = status_info.find(STATUS_CONCLUSION_MARKER)
    if message_idx == -1 or conclusion_idx == -1:
        return status_info

    return status_info[:message_idx] + "\n\n" + status_info[conclusion_idx + len(_CONCLUSION_PREFIX):]


def compress_metric(metric: Any) -> Any:
    if not isinstance(metric, dict):
        return metric
    return {k: v for k, v in metric.items() if k not in METRIC_FIELDS_TO_REMOVE}


def compress_monitor(monitor: Any) -> Any:
    """Compress one monitor record."""
    if not isinstance(monitor, dict):
        return monitor

    compressed: dict[str, Any] = {}
    for key, value in monitor.items():
        if key in MONITOR_FIELDS_TO_REMOVE:
            continue
        if key in FALSE_FLAGS_TO_REMOVE and value is False:
            continue

        if key == "metrics" and isinstance(value, dict):
            metrics = {name: compress_metric(metric) for name, metric in value.items()}
            if metrics:
                compressed[key] = metrics
            continue

        if key == "legacyTextParameters" and isinstance(value, dict) and value.get("StatusInformation"):
            deduped = deduplicate_status_information(value["StatusInformation"])
            if isinstance(deduped, str) and deduped.strip():
                compressed[key] = {**value, "StatusInformation": deduped}
            continue

        compressed[key] = value

    return compressed


def _compress_telemetry(data: Any) -> Any:
    """Compress every ``monitors`` array found at any depth."""
    if isinstance(data, list):
        return [_compress_telemetry(item) for item in data]
    if not isinstance(data, dict):
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        if key == "monitors" and isinstance(value, list):
            result[key] = [compress_monitor(monitor) for monitor in value]
        else:
            result[key] = _compress_telemetry(value)
    return result


def _remove_empty(value: Any) -> Any:
    """Recursively drop empty dicts and lists; returns ``_EMPTY`` when nothing is left."""
    if isinstance(value, list):
        cleaned = [item for item in (_remove_empty(v) for v in value) if item is not _EMPTY]
        return cleaned if cleaned else _EMPTY
    if isinstance(value, dict):
        cleaned_map = {}
        for key, item in value.items():
            item = _remove_empty(item)
            if item is not _EMPTY:
                cleaned_map[key] = item
        return cleaned_map if cleaned_map else _EMPTY
    return value


def compress_tool_output(output: Any, tool_name: str = "") -> Any:
    """
    Compress a tool output.

    Applies monitor/metric field stripping, then removes empty containers
    throughout. Non-container outputs are returned unchanged; an output that
    is entirely empty becomes ``{}``. The transform is idempotent.

    Args:
        output: Raw tool output
        tool_name: Tool name (for logging)

    Returns:
        The compressed output
    """
    if not isinstance(output, (dict, list)):
        return output

    original_size = measure_size(output)
    compressed = _remove_empty(_compress_telemetry(output))
    if compressed is _EMPTY:
        compressed = {}

    compressed_size = measure_size(compressed)
    savings = original_size - compressed_size
    if savings > LOG_SAVINGS_THRESHOLD:
        logger.info(
            f"[MIDDLEWARE] Compressed {tool_name} output: {original_size} → {compressed_size} chars "
            f"({savings / original_size * 100:.1f}% reduction)"
        )

    return compressed
