"""
Output safety utilities.

Pure helpers used to keep tool outputs within what can be sent inline to
the model: size measurement, structural previews and truncation.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Hard ceiling on a serialized tool output sent inline
HARD_MAX_OUTPUT_CHARS = 1_000_000

MAX_PREVIEW_CHARS = 5000
MAX_SAMPLE_CHARS = 500


def to_json(value: Any, indent: Optional[int] = None) -> str:
    """Serialize like a JSON API would; unknown objects fall back to ``str``."""
    if indent is None:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return json.dumps(value, ensure_ascii=False, indent=indent, default=str)


def measure_size(output: Any) -> int:
    """Length of the compact JSON serialization of ``output``."""
    return len(to_json(output))


def create_output_preview(output: Any) -> Any:
    """
    Build a bounded structural preview of an output.

    Scalars are copied, arrays and objects are replaced by a one-line
    description. The first array element is kept as ``<key>_sample`` when it
    is small.

    Args:
        output: Any JSON-like value

    Returns:
        The preview (non-objects are returned unchanged)
    """
    if not isinstance(output, dict):
        return output

    preview: dict[str, Any] = {}
    for key, value in output.items():
        if isinstance(value, list):
            preview[key] = f"[Array with {len(value)} items]"
            if value:
                if measure_size(value[0]) < MAX_SAMPLE_CHARS:
                    preview[f"{key}_sample"] = value[0]
                else:
                    preview[f"{key}_sample"] = "[Sample too large - use code_interpreter to read the file]"
        elif isinstance(value, dict):
            keys = list(value)
            more = "..." if len(keys) > 5 else ""
            preview[key] = f"{{Object with {len(keys)} keys: {', '.join(map(str, keys[:5]))}{more}}}"
        else:
            preview[key] = value

    if measure_size(preview) > MAX_PREVIEW_CHARS:
        return {
            "note": "Preview too large",
            "keys": list(output)[:20],
            "totalKeys": len(output),
        }

    return preview


def _ok_flag(output: Any) -> Any:
    if isinstance(output, dict) and output.get("ok") is not None:
        return output["ok"]
    return True


def truncate_output(output: Any, max_chars: int) -> Any:
    """
    Replace an output that exceeds ``max_chars`` with a truncation notice.

    The notice always says that truncation happened and carries a preview
    unless the preview itself would break the hard ceiling.
    """
    size = measure_size(output)
    if size <= max_chars:
        return output

    message = "Output was too large and has been truncated. The data could not be uploaded as a file."
    truncated = {
        "ok": _ok_flag(output),
        "truncated": True,
        "originalSize": size,
        "message": message,
        "preview": create_output_preview(output),
    }

    if measure_size(truncated) > HARD_MAX_OUTPUT_CHARS:
        return {
            "ok": _ok_flag(output),
            "truncated": True,
            "originalSize": size,
            "message": message,
            "hint": "Request more specific data to reduce response size.",
        }

    return truncated


def ensure_safe_output(output: Any, tool_name: str, original_size: Optional[int] = None) -> Any:
    """
    Final guard before an output is sent inline.

    Returns ``output`` when it is under the hard ceiling, otherwise a
    structured error (an existing ``_file`` reference is preserved).
    """
    size = measure_size(output)
    if size <= HARD_MAX_OUTPUT_CHARS:
        return output

    logger.warning(f"[OUTPUT] Output for {tool_name} too large ({size} chars), replacing with error")
    file_ref = output.get("_file") if isinstance(output, dict) else None

    error: dict[str, Any] = {
        "ok": False,
        "error": f"Output too large for inline ({original_size or size} chars)",
        "hint": "Use smaller maxResults (e.g., 10-50) or more specific query parameters.",
    }
    if file_ref:
        error["_file"] = file_ref
        error["hint"] = (
            f'Full data uploaded as "{file_ref.get("fileName")}". '
            "Use code_interpreter to read and analyze the JSON file."
        )
    return error


def format_output_summary(output: Any) -> str:
    """One-line description of a tool output for logs."""
    if not isinstance(output, dict):
        return f"{type(output).__name__} ({measure_size(output)} chars)"

    status = "✓" if output.get("ok", True) else "✗"
    if output.get("ok") is False:
        return f"{status} {str(output.get('error', 'error'))[:120]}"

    pagination = output.get("_pagination")
    if isinstance(pagination, dict):
        return (
            f"{status} {pagination.get('returned')} {pagination.get('field')} "
            f"({pagination.get('offset')}/{pagination.get('total')})"
        )

    if isinstance(output.get("results"), list):
        return f"{status} {len(output['results'])} provider result(s)"
    if isinstance(output.get("hosts"), dict):
        return f"{status} {len(output['hosts'])} hosts"

    return f"{status} {measure_size(output)} chars"
