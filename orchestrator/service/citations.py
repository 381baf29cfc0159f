"""
Citation post-processing for file citations in the final answer.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from adapters.llm.base import ResponsesAdapter

from .files import FileDelivery
from .responses import poll_until_terminal

logger = logging.getLogger(__name__)

MAX_SOURCE_NAMES = 10

_FILECITE_TOKEN_RE = re.compile("\ue200filecite:[^\\s]+")


def _collect(annotations: Any, citations: Dict[str, str]) -> None:
    for annotation in annotations or []:
        if isinstance(annotation, dict) and annotation.get("type") == "file_citation" and annotation.get("file_id"):
            citations[annotation["file_id"]] = annotation.get("filename") or annotation["file_id"]


def extract_citations(response: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Map file id -> filename for every file citation in a response object."""
    citations: Dict[str, str] = {}
    if not isinstance(response, dict) or not isinstance(response.get("output"), list):
        return citations

    for item in response["output"]:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "message":
            for part in item.get("content") or []:
                if isinstance(part, dict):
                    _collect(part.get("annotations"), citations)
        elif item.get("type") == "output_text":
            _collect(item.get("annotations"), citations)
    return citations


def has_file_cite_tokens(text: str) -> bool:
    return bool(_FILECITE_TOKEN_RE.search(text or ""))


def strip_file_cite_tokens(text: str) -> str:
    return _FILECITE_TOKEN_RE.sub("", text or "")


def merge_citations(final: Dict[str, str], streamed: Dict[str, str]) -> Dict[str, str]:
    """Stream-captured citations fill in; the final annotations win."""
    merged = dict(final)
    for file_id, filename in streamed.items():
        merged.setdefault(file_id, filename)
    return merged


def source_names(citations: Dict[str, str]) -> List[str]:
    """De-duplicated filenames in citation order."""
    names: List[str] = []
    for filename in citations.values():
        if filename not in names:
            names.append(filename)
    return names[:MAX_SOURCE_NAMES]


async def process_citations(
    adapter: ResponsesAdapter,
    delivery: FileDelivery,
    response_id: str,
    full_text: str = "",
    stream_citations: Optional[Dict[str, str]] = None,
    poll_interval_seconds: float = 0.8,
    poll_max_seconds: float = 180.0,
) -> None:
    """
    Share the files cited by the final answer.

    Never raises; failures are logged.
    """
    try:
        final = await poll_until_terminal(adapter, response_id, poll_interval_seconds, poll_max_seconds)
        citations = extract_citations(final)
        if not citations and not stream_citations and not has_file_cite_tokens(full_text):
            return

        merged = merge_citations(citations, stream_citations or {})
        if not merged:
            return
        await delivery.deliver_citations(merged, source_names(merged))
    except Exception as e:
        logger.info(f"Citation post-processing skipped/failed: {e}")
