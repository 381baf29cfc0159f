"""
Tool middleware: caching, pagination and size-safe output framing.

Sits between the model's function calls and whatever executes them (MCP
providers, the PromQL backend). For every call it:

- serves pages of a previously fetched result from the cache without
  re-running the tool,
- compresses the fresh result and uploads the full dataset as a file so
  code_interpreter can analyze it,
- paginates the inline reply over the result's primary collection,
- guarantees the inline reply stays under the hard size ceiling.
"""

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from adapters.llm.base import LLMError, ResponsesAdapter

from .compression import compress_tool_output
from .models import FileTracking
from .output_safety import create_output_preview, ensure_safe_output, measure_size, to_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 100
CACHE_TTL_SECONDS = 5 * 60
MAX_CACHE_ENTRIES = 100

PAGINATION_FIELDS = ("offset", "maxResults", "_cacheId")

# Conventional names of the collection a tool result is "about", by priority
PRIMARY_DATA_FIELDS = (
    "items",
    "results",
    "data",
    "records",
    "entries",
    "list",
    "hosts",
    "metrics",
    "series",
    "events",
    "alerts",
)
FALLBACK_ARRAY_MIN_LENGTH = 5

Executor = Callable[[str, dict[str, Any]], Awaitable[Any]]


# ============================================================================
# Result cache
# ============================================================================


@dataclass
class CacheEntry:
    """A memoized full (pre-pagination) tool result."""

    key: str
    tool_name: str
    result: Any
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    inserted_at: float = field(default_factory=time.monotonic)


class ResultCache:
    """
    Bounded TTL cache of tool results.

    Inserting at capacity first evicts expired entries, then the oldest half
    of the capacity. Safe for concurrent use.
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = MAX_CACHE_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at > self.ttl_seconds

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``; an expired entry is dropped."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                logger.info(f"[CACHE] Expired: {key}")
                return None

        logger.info(f"[CACHE] Hit: {key} ({entry.tool_name})")
        return entry

    def set(
        self,
        key: str,
        tool_name: str,
        result: Any,
        file_id: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> CacheEntry:
        """Store a result, evicting first if the cache is full."""
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._cleanup_locked()
            entry = CacheEntry(
                key=key,
                tool_name=tool_name,
                result=result,
                file_id=file_id,
                file_name=file_name,
                inserted_at=self._clock(),
            )
            self._entries[key] = entry

        logger.info(f"[CACHE] Stored: {key} ({tool_name})")
        return entry

    def cleanup(self) -> int:
        """Evict expired entries, then the oldest if still at capacity."""
        with self._lock:
            return self._cleanup_locked()

    def _cleanup_locked(self) -> int:
        now = self._clock()
        removed = 0

        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]
            removed += 1

        if len(self._entries) >= self.max_entries:
            oldest = sorted(self._entries.values(), key=lambda e: e.inserted_at)
            for entry in oldest[: self.max_entries // 2]:
                del self._entries[entry.key]
                removed += 1

        logger.info(f"[CACHE] Cleanup: removed {removed}, remaining {len(self._entries)}")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "keys": list(self._entries),
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries,
            }


def strip_pagination_args(args: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``args`` without the pagination-control fields."""
    return {k: v for k, v in args.items() if k not in PAGINATION_FIELDS}


def generate_cache_key(tool_name: str, args: Optional[dict[str, Any]]) -> str:
    """
    Derive the cache key of a logical request.

    Pagination fields are ignored and keys are sorted, so every page of the
    same query maps to the same key.
    """
    normalized = to_json_sorted(strip_pagination_args(args or {}))
    return hashlib.sha256(f"{tool_name}:{normalized}".encode("utf-8")).hexdigest()[:16]


def to_json_sorted(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


# ============================================================================
# Pagination
# ============================================================================


class PrimaryData(NamedTuple):
    """The collection a result is paginated over."""

    key: str
    data: Any
    is_object: bool

    @property
    def size(self) -> int:
        return len(self.data)


def find_primary_data(output: Any) -> Optional[PrimaryData]:
    """
    Locate the primary collection of a tool result.

    Known field names are tried in priority order (first non-empty list or
    dict wins); otherwise the first list longer than five elements.

    Returns:
        The located collection, or None if the result is not paginatable
    """
    if not isinstance(output, dict):
        return None

    for name in PRIMARY_DATA_FIELDS:
        value = output.get(name)
        if isinstance(value, list) and value:
            return PrimaryData(name, value, False)
        if isinstance(value, dict) and value:
            return PrimaryData(name, value, True)

    for name, value in output.items():
        if isinstance(value, list) and len(value) > FALLBACK_ARRAY_MIN_LENGTH:
            return PrimaryData(name, value, False)

    return None


def paginate_output(output: Any, offset: int, limit: int, cache_id: str) -> tuple[Any, bool]:
    """
    Slice the primary collection of ``output`` to ``[offset, offset + limit)``.

    Returns:
        ``(output, paginated)``. The output is returned untouched when it is
        not paginatable or fits in a single page at offset 0.
    """
    primary = find_primary_data(output)
    if primary is None:
        return output, False

    total = primary.size
    if total <= limit and offset == 0:
        return output, False

    if primary.is_object:
        keys = list(primary.data)[offset:offset + limit]
        page: Any = {k: primary.data[k] for k in keys}
        returned = len(keys)
    else:
        page = primary.data[offset:offset + limit]
        returned = len(page)

    has_more = offset + returned < total
    paginated = dict(output)
    paginated[primary.key] = page
    paginated["_pagination"] = {
        "offset": offset,
        "limit": limit,
        "returned": returned,
        "total": total,
        "hasMore": has_more,
        "nextOffset": offset + returned if has_more else None,
        "field": primary.key,
        "hint": (
            f'Showing {returned} of {total} {primary.key}. To get more, call this tool again with '
            f'_cacheId="{cache_id}" and offset={offset + returned}.'
            if has_more
            else f"Showing all {total} {primary.key}."
        ),
    }
    return paginated, True


# ============================================================================
# Externalization
# ============================================================================


@dataclass
class ExternalizedFile:
    """A full tool result stored in the LLM file store."""

    file_id: str
    file_name: str
    original_size: int
    hint: str
    preview: Any = None

    def to_summary(self, ok: Any = True) -> dict[str, Any]:
        return {
            "ok": ok,
            "dataInFile": True,
            "fileId": self.file_id,
            "fileName": self.file_name,
            "originalSize": self.original_size,
            "hint": self.hint,
            "preview": self.preview,
        }


OutputExternalizer = Callable[[Any, str], Awaitable[Optional[ExternalizedFile]]]


class LLMFileExternalizer:
    """
    Uploads full tool results as JSON files for code_interpreter.

    Uploaded files are recorded in the conversation's ``FileTracking`` so the
    next tool catalog exposes them to the code_interpreter container.
    """

    def __init__(self, adapter: ResponsesAdapter, tracking: FileTracking, clock: Callable[[], float] = time.time):
        self.adapter = adapter
        self.tracking = tracking
        self._clock = clock

    async def __call__(self, output: Any, tool_name: str) -> Optional[ExternalizedFile]:
        body = to_json(output, indent=2)
        size = len(body)
        safe_name = re.sub(r"[^a-zA-Z0-9_-]", "_", tool_name)
        file_name = f"{safe_name}_{int(self._clock() * 1000)}.json"

        logger.info(f"[MIDDLEWARE] Uploading {tool_name} output as file ({size} chars)")
        try:
            file_id = await self.adapter.upload_file(body.encode("utf-8"), file_name, purpose="user_data")
        except LLMError as e:
            logger.error(f"[MIDDLEWARE] Failed to upload {tool_name} output as file: {e}")
            return None

        logger.info(f"[MIDDLEWARE] Uploaded {tool_name} output as file {file_id}")
        self.tracking.record_tool_output(tool_name, file_id, file_name, size)

        return ExternalizedFile(
            file_id=file_id,
            file_name=file_name,
            original_size=size,
            hint=(
                f'Full {tool_name} output ({size} chars) uploaded as file "{file_name}". '
                "Use code_interpreter to read and analyze this JSON file."
            ),
            preview=create_output_preview(output),
        )


# ============================================================================
# Middleware
# ============================================================================


def _positive_number(value: Any, default: int) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return int(value)
    return default


def _non_negative_number(value: Any, default: int) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return int(value)
    return default


def _file_reference(file_id: str, file_name: str, hint: str) -> dict[str, Any]:
    return {"fileId": file_id, "fileName": file_name, "hint": hint}


class ToolMiddleware:
    """Wraps tool executors with caching, pagination and size bounding."""

    def __init__(self, cache: Optional[ResultCache] = None, default_max_results: int = DEFAULT_MAX_RESULTS):
        self.cache = cache if cache is not None else ResultCache()
        self.default_max_results = default_max_results

    async def execute(
        self,
        name: str,
        args: Optional[dict[str, Any]],
        executor: Executor,
        externalizer: Optional[OutputExternalizer] = None,
    ) -> Any:
        """
        Execute a tool call through the middleware.

        Args:
            name: Tool name
            args: Tool arguments (may include offset, maxResults, _cacheId)
            executor: Coroutine function running the actual tool: (name, args) -> result
            externalizer: Uploads the full result as a file, when available

        Returns:
            The (possibly paginated) output, or a structured ``{ok: False, error}``.
            Never raises for tool failures.
        """
        args = dict(args or {})
        max_results = _positive_number(args.get("maxResults"), self.default_max_results)
        offset = _non_negative_number(args.get("offset"), 0)
        explicit_id = args.get("_cacheId")
        cache_id = explicit_id if isinstance(explicit_id, str) and explicit_id else generate_cache_key(name, args)

        cached = self.cache.get(cache_id)
        if cached is not None:
            page, paginated = paginate_output(cached.result, offset, max_results, cache_id)
            if isinstance(page, dict):
                page = dict(page)
                if paginated:
                    page["_cacheId"] = cache_id
                if cached.file_id:
                    page["_file"] = _file_reference(
                        cached.file_id,
                        cached.file_name,
                        f'Full data available in file "{cached.file_name}". Use code_interpreter to analyze.',
                    )
            return ensure_safe_output(page, name)

        clean_args = strip_pagination_args(args)
        try:
            result = await executor(name, clean_args)
        except Exception as e:
            logger.error(f"[MIDDLEWARE] Tool execution failed: {name}: {e}")
            return {"ok": False, "error": str(e)}

        result = compress_tool_output(result, name)

        uploaded: Optional[ExternalizedFile] = None
        if externalizer is not None:
            uploaded = await externalizer(result, name)

        primary = find_primary_data(result)
        data_size = primary.size if primary else 0
        if data_size > max_results or data_size > self.default_max_results:
            self.cache.set(
                cache_id,
                name,
                result,
                file_id=uploaded.file_id if uploaded else None,
                file_name=uploaded.file_name if uploaded else None,
            )

        page, paginated = paginate_output(result, offset, max_results, cache_id)
        if isinstance(page, dict) and (paginated or uploaded):
            page = dict(page)
            if paginated:
                page["_cacheId"] = cache_id
            if uploaded:
                page["_file"] = _file_reference(
                    uploaded.file_id,
                    uploaded.file_name,
                    f'Full data ({measure_size(result)} chars) uploaded as "{uploaded.file_name}". '
                    "Use code_interpreter to read and analyze.",
                )

        return ensure_safe_output(page, name)


async def execute_with_middleware(
    name: str,
    args: Optional[dict[str, Any]],
    executor: Executor,
    cache: ResultCache,
    externalizer: Optional[OutputExternalizer] = None,
) -> Any:
    """Run one call through a ``ToolMiddleware`` bound to ``cache``."""
    return await ToolMiddleware(cache).execute(name, args, executor, externalizer)
