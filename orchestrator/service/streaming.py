"""
Streaming turn engine.

Consumes one streamed model response and folds its events into a
``TurnResult``: answer text, requested tool calls, generated files and how
the turn ended. Reasoning deltas drive a rate-limited status display and
two safety cutoffs stop runaway generation.
"""

import logging
import posixpath
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter

from .config import OrchestratorConfig
from .events import StreamEvent, StreamEventKind, parse_stream_event
from .models import (
    FunctionCall,
    GeneratedFile,
    IncompleteReason,
    TurnDiagnostics,
    TurnResult,
    TurnStatus,
)
from .platform import StreamController

logger = logging.getLogger(__name__)

STATUS_MAX_LENGTH = 50
STATUS_MAX_ITEMS = 5
UNKNOWN_EVENT_TABLE_SIZE = 25

_FILECITE_RE = re.compile("\ue200filecite:[^\\s]+")
_SANDBOX_PATH_RE = re.compile(r"sandbox:(/mnt/data/[^\s)\]\"']+)")

StatusCallback = Callable[[str, Optional[List[str]]], Awaitable[None]]
StreamStartCallback = Callable[[Optional[str]], Awaitable[Optional[StreamController]]]
TextChunkCallback = Callable[[str, Optional[StreamController]], Awaitable[None]]


def sanitize_for_status(text: str) -> str:
    """Strip markdown emphasis and collapse whitespace."""
    return re.sub(r"\s+", " ", re.sub(r"[*_`~]", "", text)).strip()


def chunk_text(text: str, max_length: int = STATUS_MAX_LENGTH) -> List[str]:
    """Split sanitized text into short chunks, breaking on a space when possible."""
    clean = sanitize_for_status(text)
    chunks: List[str] = []
    i = 0
    while i < len(clean):
        end = min(i + max_length, len(clean))
        if end < len(clean):
            space = clean.rfind(" ", 0, end + 1)
            if space > i + 10:
                chunks.append(clean[i:space])
                i = space + 1
                continue
        chunks.append(clean[i:end])
        i = end
    return chunks


def clean_text_delta(delta: str) -> str:
    """Remove stray citation tokens; whitespace is left untouched."""
    return _FILECITE_RE.sub("", delta).replace("【】", "")


def is_repetitive(text: str, window: int, ratio: float) -> bool:
    """Whether the trailing ``window`` characters are dominated by one character."""
    if window <= 0 or len(text) < window:
        return False
    tail = text[-window:]
    _, count = Counter(tail).most_common(1)[0]
    return count / len(tail) > ratio


def filename_from_sandbox_path(text: str) -> Optional[str]:
    """Basename of the last ``sandbox:/mnt/data/...`` link in ``text``."""
    matches = _SANDBOX_PATH_RE.findall(text or "")
    if not matches:
        return None
    return posixpath.basename(matches[-1]) or None


@dataclass
class TurnCallbacks:
    """Hooks the engine calls while consuming a stream."""

    set_status: Optional[StatusCallback] = None
    on_stream_start: Optional[StreamStartCallback] = None
    on_text_chunk: Optional[TextChunkCallback] = None
    on_response_id: Optional[Callable[[str], None]] = None


class StatusReporter:
    """Rate-limited, de-duplicated status updates built from reasoning text."""

    def __init__(
        self,
        set_status: Optional[StatusCallback],
        cooldown_seconds: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._set_status = set_status
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._buffer = ""
        self._last_at: Optional[float] = None
        self._last_payload: Optional[List[str]] = None

    async def add_reasoning(self, delta: str) -> None:
        self._buffer += delta
        await self.flush()

    async def flush(self, force: bool = False) -> None:
        """Push the buffered reasoning unless it is inside the cooldown window (``force`` skips the window)."""
        if not self._buffer.strip() or self._set_status is None:
            return
        now = self._clock()
        if not force and self._last_at is not None and now - self._last_at < self._cooldown:
            return

        tail = chunk_text(self._buffer)[-STATUS_MAX_ITEMS:]
        if tail == self._last_payload:
            return
        self._last_payload = tail
        self._last_at = now
        try:
            await self._set_status("working...", tail)
        except Exception as e:
            logger.debug(f"Status update failed: {e}")

    async def set(self, status: str) -> None:
        if self._set_status is None:
            return
        try:
            await self._set_status(status, None)
        except Exception as e:
            logger.debug(f"Status update failed: {e}")


class StreamTurnEngine:
    """Runs one streamed turn and produces its ``TurnResult``."""

    def __init__(
        self,
        adapter: ResponsesAdapter,
        config: OrchestratorConfig,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter = adapter
        self.config = config
        self._clock = clock
        self._wall_clock = wall_clock

    async def run(self, request: ResponseRequest, callbacks: Optional[TurnCallbacks] = None) -> TurnResult:
        """
        Stream one turn.

        Args:
            request: Call parameters (input, tools, tool choice, chaining id)
            callbacks: Status and incremental-delivery hooks

        Returns:
            The folded turn result

        Raises:
            LLMError: If the call is rejected or the stream breaks
        """
        callbacks = callbacks or TurnCallbacks()
        fold = _TurnFold(self, request, callbacks)
        stream = self.adapter.stream(request)

        try:
            async for raw in stream:
                if await fold.apply(parse_stream_event(raw)):
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            await fold.stop_controller()

        if not fold.started_writing:
            # Reasoning held back by the cooldown
            await fold.status.flush(force=True)
        await fold.recover_container_files()
        return fold.result()


class _TurnFold:
    """Accumulator for one turn; ``apply`` returns True to stop consuming."""

    def __init__(self, engine: StreamTurnEngine, request: ResponseRequest, callbacks: TurnCallbacks):
        self.engine = engine
        self.config = engine.config
        self.callbacks = callbacks
        self.started_at = engine._wall_clock()
        self.status = StatusReporter(callbacks.set_status, self.config.status_cooldown_seconds, engine._clock)

        self.response_id: Optional[str] = None
        self.calls: Dict[int, FunctionCall] = {}
        self.text = ""
        self.started_writing = False
        self.controller: Optional[StreamController] = None
        self.files: List[GeneratedFile] = []
        self.citations: Dict[str, str] = {}
        self.container_id: Optional[str] = None
        self.saw_completed = False
        self.incomplete_reason: Optional[str] = None
        self.aborted = False
        self.counters: Counter = Counter()
        self.unknown: Counter = Counter()
        self.diagnostics = TurnDiagnostics(
            used_previous_response_id=request.previous_response_id,
            used_tool_choice=request.tool_choice if isinstance(request.tool_choice, str) else "auto",
        )

    async def apply(self, event: StreamEvent) -> bool:
        if self.response_id is None and event.response_id:
            self.response_id = event.response_id
            if self.callbacks.on_response_id is not None:
                self.callbacks.on_response_id(event.response_id)

        self.counters[event.kind.value] += 1
        kind = event.kind

        if kind == StreamEventKind.REASONING_DELTA:
            if not self.started_writing and event.delta:
                await self.status.add_reasoning(event.delta)

        elif kind == StreamEventKind.TOOL_CALL_ADDED:
            self._tool_call_added(event)

        elif kind == StreamEventKind.TOOL_CALL_ARGS_DELTA:
            call = self.calls.get(event.output_index)
            if call is not None:
                call.arguments += event.delta

        elif kind == StreamEventKind.TOOL_CALL_DONE:
            self._tool_call_done(event)

        elif kind == StreamEventKind.TEXT_DELTA:
            if event.delta:
                return await self._text_delta(event.delta)

        elif kind == StreamEventKind.FILE_DONE:
            file_id = event.item.get("file_id") or event.item.get("id")
            if file_id:
                self.files.append(
                    GeneratedFile(
                        file_id=file_id,
                        filename=event.item.get("filename") or event.item.get("name"),
                        container_id=event.item.get("container_id") or self.container_id,
                    )
                )

        elif kind == StreamEventKind.ANNOTATION_ADDED:
            self._annotation(event.annotation)

        elif kind == StreamEventKind.CODE_INTERPRETER:
            if event.container_id:
                self.container_id = event.container_id

        elif kind == StreamEventKind.COMPLETED:
            self.saw_completed = True

        elif kind == StreamEventKind.ERROR:
            logger.warning(f"Stream error event: {event.error}")

        elif kind == StreamEventKind.INCOMPLETE:
            self.incomplete_reason = event.reason or "unknown"

        elif kind == StreamEventKind.OTHER:
            self.unknown[event.type] += 1

        return False

    def _tool_call_added(self, event: StreamEvent) -> None:
        index = event.output_index if event.output_index is not None else len(self.calls)
        item = event.item
        self.calls[index] = FunctionCall(
            call_id=item.get("call_id") or item.get("id") or f"call_{index}",
            name=item.get("name") or "",
            arguments=item.get("arguments") or "",
            output_index=index,
        )

    def _tool_call_done(self, event: StreamEvent) -> None:
        index = event.output_index if event.output_index is not None else len(self.calls)
        item = event.item
        prior = self.calls.get(index)
        arguments = prior.arguments if prior is not None and prior.arguments else (item.get("arguments") or "")
        self.calls[index] = FunctionCall(
            call_id=item.get("call_id") or (prior.call_id if prior else None) or item.get("id") or f"call_{index}",
            name=item.get("name") or (prior.name if prior else ""),
            arguments=arguments,
            output_index=index,
        )

    async def _text_delta(self, delta: str) -> bool:
        if not self.started_writing:
            self.started_writing = True
            await self.status.set("writing...")
            if self.callbacks.on_stream_start is not None:
                self.controller = await self.callbacks.on_stream_start(self.response_id)

        self.text += delta
        cleaned = clean_text_delta(delta)
        if cleaned and self.callbacks.on_text_chunk is not None:
            await self.callbacks.on_text_chunk(cleaned, self.controller)

        if len(self.text) > self.config.max_response_chars:
            return self._abort(IncompleteReason.OUTPUT_TOO_LONG)
        if is_repetitive(self.text, self.config.repetition_window_chars, self.config.repetition_ratio):
            return self._abort(IncompleteReason.REPETITIVE_OUTPUT)
        return False

    def _abort(self, reason: IncompleteReason) -> bool:
        logger.warning(f"Stopping stream early ({reason.value}) after {len(self.text)} chars")
        self.aborted = True
        self.incomplete_reason = reason.value
        return True

    def _annotation(self, annotation: Dict[str, Any]) -> None:
        kind = annotation.get("type")
        file_id = annotation.get("file_id")
        if not file_id:
            return

        if kind == "file_citation":
            self.citations[file_id] = annotation.get("filename") or file_id
        elif kind in ("container_file_citation", "file_path"):
            filename = annotation.get("filename") or filename_from_sandbox_path(self.text)
            self.files.append(
                GeneratedFile(
                    file_id=file_id,
                    filename=filename,
                    container_id=annotation.get("container_id") or self.container_id,
                )
            )

    async def stop_controller(self) -> None:
        if self.controller is None:
            return
        try:
            await self.controller.stop()
        except Exception as e:
            logger.debug(f"Failed to stop stream controller: {e}")

    async def recover_container_files(self) -> None:
        """
        Best-effort listing of files written in the container.

        Only used when no file surfaced through stream events; upstream event
        emission is inconsistent, so some files may still be missed.
        """
        if self.files or not self.container_id:
            return
        try:
            entries = await self.engine.adapter.list_container_files(self.container_id)
        except LLMError as e:
            logger.warning(f"Container file listing failed for {self.container_id}: {e}")
            return

        for entry in entries:
            if entry.get("source") != "assistant":
                continue
            created_at = entry.get("created_at")
            if isinstance(created_at, (int, float)) and created_at < int(self.started_at):
                continue
            if not entry.get("id"):
                continue
            self.files.append(
                GeneratedFile(
                    file_id=entry["id"],
                    filename=posixpath.basename(entry.get("path") or "") or None,
                    container_id=self.container_id,
                )
            )
        if self.files:
            logger.info(f"Recovered {len(self.files)} file(s) from container {self.container_id}")

    def result(self) -> TurnResult:
        seen: set = set()
        files: List[GeneratedFile] = []
        for generated in self.files:
            if generated.file_id not in seen:
                seen.add(generated.file_id)
                files.append(generated)

        if self.aborted:
            status = TurnStatus.ABORTED
        elif self.incomplete_reason:
            status = TurnStatus.INCOMPLETE
        else:
            status = TurnStatus.COMPLETED

        self.diagnostics.started_writing = self.started_writing
        self.diagnostics.full_text_length = len(self.text)
        self.diagnostics.event_counters = dict(self.counters)
        self.diagnostics.unknown_event_types = [
            {"type": name, "count": count}
            for name, count in self.unknown.most_common(UNKNOWN_EVENT_TABLE_SIZE)
        ]

        result = TurnResult(
            response_id=self.response_id,
            function_calls=[self.calls[i] for i in sorted(self.calls)],
            text=self.text,
            files=files,
            status=status,
            incomplete_reason=self.incomplete_reason,
            saw_completed=self.saw_completed,
            had_text=self.counters[StreamEventKind.TEXT_DELTA.value] > 0,
            stream_citations=dict(self.citations),
            debug=self.diagnostics,
        )
        logger.debug(
            f"Turn summary: response={result.response_id} calls={len(result.function_calls)} "
            f"text={len(result.text)} status={status.value} reason={result.incomplete_reason} "
            f"counters={result.debug.event_counters}"
        )
        return result
