"""
Conversation orchestrator: the agentic loop for one incoming chat message.

Builds the model input from the thread, streams turns, executes requested
tool calls and feeds their outputs back until a turn needs no more tools,
then makes sure the user sees an answer.
"""

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

import anyio

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter
from mcp_gateway.service.registry import ToolRegistry

from .citations import process_citations
from .config import OrchestratorConfig
from .context_manager import (
    build_conversation_input,
    estimate_token_count,
    find_last_bot_message,
    is_context_window_error,
    summarize_conversation_history,
    summarize_input_items,
    system_item,
)
from .files import FileDelivery, FileUploadManager, extract_previous_uploads
from .function_calls import CallContext, FunctionCallProcessor
from .middleware import LLMFileExternalizer
from .models import ConversationState, FileTracking, IncomingMessage, TurnResult, context_marker
from .platform import ChatPlatform, StreamController
from .responses import continue_if_incomplete, get_text_from_response, poll_until_terminal, recover_from_terminated
from .streaming import StreamTurnEngine, TurnCallbacks
from .tools import build_tools_array, log_tool_warnings

logger = logging.getLogger(__name__)

FORCE_ANSWER_INSTRUCTION = "Continue and provide the chat-visible answer now. Do not call tools."
TRUNCATION_NOTICE = "\n\n... _(output truncated - message too long)_"
FAILURE_MESSAGE = "Sorry, I couldn't complete that request. Please try again."
EMPTY_MESSAGE = "\u200b"
CONTINUE_PROMPTS_TITLE = "I stopped before finishing that answer."
CONTINUE_PROMPTS = [{"title": "Continue", "message": "Please continue and summarize now."}]
CONTINUE_FALLBACK_TEXT = "I stopped before finishing that answer. Ask me to continue."


class ThreadResponseCache:
    """Latest response id per thread, bounded, in process memory."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, str]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, thread_id: str) -> Optional[str]:
        return self._entries.get(thread_id)

    def set(self, thread_id: str, response_id: str) -> None:
        self._entries[thread_id] = response_id
        self._entries.move_to_end(thread_id)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


# ============================================================================
# Incremental delivery
# ============================================================================


class _MarkedStreamController(StreamController):
    """Attaches the context marker to the streamed message once it is posted."""

    def __init__(self, inner: StreamController, platform: ChatPlatform, marker: Callable[[], Dict[str, Any]]):
        self._inner = inner
        self._platform = platform
        self._marker = marker

    async def append(self, text: str) -> None:
        await self._inner.append(text)

    async def stop(self) -> Optional[str]:
        message_ref = await self._inner.stop()
        if message_ref:
            try:
                await self._platform.update_message_metadata(message_ref, self._marker())
            except Exception as e:
                logger.warning(f"Failed to attach context marker to {message_ref}: {e}")
        return message_ref


class _TurnDelivery:
    """Delivers one turn's text to the thread, capped per message."""

    def __init__(self, platform: ChatPlatform, state: ConversationState, tracking: FileTracking, limit: int):
        self.platform = platform
        self.state = state
        self.tracking = tracking
        self.limit = limit
        self.total_chars = 0
        self.truncated = False
        self.posted_first = False

    def marker(self) -> Dict[str, Any]:
        return context_marker(self.state.last_seen_response_id, self.tracking.uploaded_files)

    async def on_stream_start(self, response_id: Optional[str]) -> Optional[StreamController]:
        try:
            inner = await self.platform.start_stream()
        except Exception as e:
            logger.info(f"Failed to start incremental delivery: {e}")
            return None
        return _MarkedStreamController(inner, self.platform, self.marker)

    async def on_text_chunk(self, text: str, controller: Optional[StreamController]) -> None:
        if self.truncated:
            return

        if self.total_chars + len(text) > self.limit:
            self.truncated = True
            text = text[: max(0, self.limit - self.total_chars)] + TRUNCATION_NOTICE
            logger.warning(f"Truncated streamed output at {self.limit} chars")

        self.total_chars += len(text)
        if controller is not None:
            await controller.append(text)
            return

        metadata = None
        if not self.posted_first and self.state.last_seen_response_id:
            metadata = self.marker()
            self.posted_first = True
        await self.platform.send_text(text, metadata)


# ============================================================================
# Orchestrator
# ============================================================================


class ConversationOrchestrator:
    """Runs the agentic loop for incoming messages."""

    def __init__(
        self,
        adapter: ResponsesAdapter,
        registry: ToolRegistry,
        processor: FunctionCallProcessor,
        config: OrchestratorConfig,
        thread_cache: Optional[ThreadResponseCache] = None,
        engine: Optional[StreamTurnEngine] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            adapter: Responses adapter for streaming, recovery and files
            registry: Tool registry
            processor: Executes the model's tool calls
            config: Orchestrator configuration
            thread_cache: Latest response id per thread (shared across messages)
            engine: Streaming turn engine (built from ``adapter`` by default)
        """
        self.adapter = adapter
        self.registry = registry
        self.processor = processor
        self.config = config
        self.thread_cache = thread_cache if thread_cache is not None else ThreadResponseCache()
        self.engine = engine or StreamTurnEngine(adapter, config)

    async def handle_message(self, message: IncomingMessage, platform: ChatPlatform) -> ConversationState:
        """
        Answer one incoming message.

        Never raises; failures end with a short message in the thread.

        Returns:
            The final conversation state
        """
        logger.debug(f"Processing message in thread {message.thread_id} from {message.sender_id}")
        state = ConversationState()
        try:
            await self._run(message, platform, state)
        except Exception as e:
            await self._handle_failure(e, platform, state)
        return state

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _run(self, message: IncomingMessage, platform: ChatPlatform, state: ConversationState) -> None:
        await platform.set_title(message.text)
        await platform.set_status("thinking...", self.config.loading_messages)

        history = await platform.fetch_thread(self.config.thread_history_limit)

        tracking = FileTracking()
        uploads = FileUploadManager(self.adapter, platform, extract_previous_uploads(history), tracking)
        for thread_message in history:
            for attachment in thread_message.attachments:
                await uploads.upload_once(attachment)

        last_bot_index, _, marker_id = find_last_bot_message(history)
        cached_id = self.thread_cache.get(message.thread_id)
        state.previous_response_id = cached_id or marker_id
        logger.info(
            f"Previous response ID: {state.previous_response_id} (from {'cache' if cached_id else 'metadata'})"
        )

        tools = build_tools_array(self.registry, self.config, tracking.code_file_ids)
        await log_tool_warnings(self.registry, platform)

        state.input = self._initial_input(tracking, include_base_prompt=not state.previous_response_id)
        if not state.previous_response_id:
            history_items = await build_conversation_input(
                history, last_bot_index, message.message_ts, message.sender_id, uploads.upload_once
            )
            state.input.extend(history_items)
            logger.info(f"Included conversation history: {len(history_items)} items")
        else:
            logger.info(f"Skipping conversation history (chaining from {state.previous_response_id})")
        state.input.extend(await self._current_message(message, uploads))

        estimated = estimate_token_count(state.input)
        if estimated > self.config.context_threshold_tokens:
            logger.info(f"[Context] Pre-flight: estimated {estimated} tokens exceeds threshold, summarizing")
            await platform.set_status("summarizing conversation...")
            state.input = await summarize_conversation_history(
                self.adapter, state.input, self.config.keep_recent_messages, self.config
            )
            state.context_summarized = True
            logger.info(f"[Context] After summarization: estimated {estimate_token_count(state.input)} tokens")

        await self._loop(message, platform, state, tracking, tools)
        await self._finalize(platform, state, tracking)

    def _initial_input(self, tracking: FileTracking, include_base_prompt: bool) -> List[Dict[str, Any]]:
        items = []
        if include_base_prompt:
            items.append(system_item(self.config.system_prompt))

        names = list(tracking.code_container_files.values())
        if names:
            items.append(
                system_item(
                    f"User uploaded files available to code_interpreter: {', '.join(names)}. "
                    "Do NOT use File Search for these; read them directly with code_interpreter."
                )
            )
        return items

    async def _current_message(self, message: IncomingMessage, uploads: FileUploadManager) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"type": "input_text", "text": message.text}]
        for attachment in message.attachments:
            uploaded = await uploads.upload_once(attachment)
            if uploaded and uploaded.get("content_item"):
                parts.append(uploaded["content_item"])

        profile = []
        if message.sender.real_name:
            profile.append(f"User's real name: {message.sender.real_name}")
        profile.append(f"User's ID: <@{message.sender_id}> (always use this format to mention the user)")
        if message.sender.timezone:
            profile.append(f"User's timezone: {message.sender.timezone}")

        return [system_item("\n".join(profile)), {"role": "user", "content": parts}]

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        message: IncomingMessage,
        platform: ChatPlatform,
        state: ConversationState,
        tracking: FileTracking,
        tools: List[Dict[str, Any]],
    ) -> None:
        delivery = FileDelivery(self.adapter, platform)
        context = CallContext(platform=platform, externalizer=LLMFileExternalizer(self.adapter, tracking))

        while True:
            state.iteration += 1
            logger.info(
                f"Loop iteration {state.iteration}: previous_response_id={state.previous_response_id} "
                f"input={len(state.input)}"
            )
            logger.debug(f"Input summary: {summarize_input_items(state.input)}")

            try:
                turn = await self._stream_turn(platform, state, tracking, tools)
            except LLMError as e:
                if not is_context_window_error(e) or state.context_summarized:
                    raise
                logger.info("[Context] Context window exceeded, summarizing and retrying")
                await platform.set_status("conversation too long, summarizing...")
                state.input = await summarize_conversation_history(
                    self.adapter, state.input, self.config.overflow_keep_recent_messages, self.config
                )
                state.context_summarized = True
                turn = await self._stream_turn(platform, state, tracking, tools)

            if turn.files:
                logger.info(f"Processing {len(turn.files)} output file(s) from code_interpreter")
                await delivery.deliver_generated(turn.files)

            if turn.response_id:
                state.final_response_id = turn.response_id
                state.last_seen_response_id = turn.response_id
                state.previous_response_id = turn.response_id
                self.thread_cache.set(message.thread_id, turn.response_id)
            if turn.had_text:
                state.any_text_streamed = True
            if turn.incomplete_reason:
                state.saw_any_incomplete = True
            if turn.text:
                state.last_full_text = turn.text
            state.stream_citations.update(turn.stream_citations)

            if turn.function_calls and not turn.response_id:
                # Tool outputs can only be chained to the response that issued the calls
                logger.warning(
                    f"Turn {state.iteration} requested {len(turn.function_calls)} tool call(s) without a "
                    "response id; no continuation possible, ending loop"
                )
                state.input = []
                state.tool_choice = None
                break

            already_forced = state.tool_choice == "none"
            state.input = []
            state.tool_choice = None

            if not turn.had_text and not turn.function_calls and turn.incomplete_reason and not already_forced:
                logger.info(
                    f"Turn {state.iteration} incomplete ({turn.incomplete_reason}) without output; "
                    "forcing a text-only turn"
                )
                state.input = [system_item(FORCE_ANSWER_INSTRUCTION)]
                state.tool_choice = "none"
                continue

            state.input = await self._execute_calls(turn, context)

            if tracking.code_file_ids:
                tools = build_tools_array(self.registry, self.config, tracking.code_file_ids)
                logger.debug(f"Rebuilt tools with {len(tracking.code_file_ids)} code_interpreter file(s)")

            if not state.input:
                break

        logger.debug(f"Exiting loop after {state.iteration} iteration(s), final response {state.final_response_id}")

    async def _stream_turn(
        self,
        platform: ChatPlatform,
        state: ConversationState,
        tracking: FileTracking,
        tools: List[Dict[str, Any]],
    ) -> TurnResult:
        request = ResponseRequest(
            input=state.input,
            tools=tools,
            tool_choice=state.tool_choice,
            previous_response_id=state.previous_response_id,
            max_output_tokens=self.config.max_output_tokens,
            reasoning_effort=self.config.reasoning_effort,
            reasoning_summary=self.config.reasoning_summary,
            text_verbosity=self.config.text_verbosity,
        )
        delivery = _TurnDelivery(platform, state, tracking, self.config.platform_safe_message_length)

        def remember(response_id: str) -> None:
            state.last_seen_response_id = response_id

        callbacks = TurnCallbacks(
            set_status=platform.set_status,
            on_stream_start=delivery.on_stream_start,
            on_text_chunk=delivery.on_text_chunk,
            on_response_id=remember,
        )
        return await self.engine.run(request, callbacks)

    async def _execute_calls(self, turn: TurnResult, context: CallContext) -> List[Dict[str, Any]]:
        calls = turn.function_calls
        outputs: List[List[Dict[str, Any]]] = [[] for _ in calls]

        async def run(index: int) -> None:
            outputs[index] = await self.processor.process(calls[index], context)

        async with anyio.create_task_group() as tg:
            for index in range(len(calls)):
                tg.start_soon(run, index)

        items: List[Dict[str, Any]] = []
        for call, output in zip(calls, outputs):
            logger.info(f"Executed function call {call.name} ({call.call_id}): {len(output)} item(s)")
            items.extend(output)
        return items

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, platform: ChatPlatform, state: ConversationState, tracking: FileTracking) -> None:
        if not state.final_response_id:
            logger.warning("No response ID was received from the model")
            return

        if not state.any_text_streamed:
            await self._handle_no_text(platform, state, tracking)

        await process_citations(
            self.adapter,
            FileDelivery(self.adapter, platform),
            state.final_response_id,
            state.last_full_text,
            state.stream_citations,
            self.config.poll_interval_seconds,
            self.config.poll_max_seconds,
        )

    async def _handle_no_text(self, platform: ChatPlatform, state: ConversationState, tracking: FileTracking) -> None:
        response_id = state.final_response_id
        try:
            final = await self._poll(response_id)
            status = final.get("status") if isinstance(final, dict) else None

            if status == "completed":
                text = get_text_from_response(final)
                if text:
                    await platform.send_text(text, context_marker(response_id, tracking.uploaded_files))
                    return
            elif status == "incomplete" and state.saw_any_incomplete:
                continuation = await continue_if_incomplete(
                    self.adapter, final, self.config.continuation_min_tokens, self.config.continuation_max_tokens
                )
                polled = await self._poll(continuation["id"]) if continuation and continuation.get("id") else None
                text = get_text_from_response(polled)
                if text:
                    marker_id = polled.get("id") or response_id
                    await platform.send_text(text, context_marker(marker_id, tracking.uploaded_files))
                    return
        except LLMError as e:
            logger.warning(f"Background recovery failed: {e}")

        await self._suggest_continue(platform)
        await platform.send_text(EMPTY_MESSAGE, context_marker(response_id, tracking.uploaded_files))

    async def _poll(self, response_id: str) -> Optional[Dict[str, Any]]:
        return await poll_until_terminal(
            self.adapter, response_id, self.config.poll_interval_seconds, self.config.poll_max_seconds
        )

    async def _suggest_continue(self, platform: ChatPlatform) -> None:
        try:
            await platform.set_suggested_prompts(CONTINUE_PROMPTS_TITLE, CONTINUE_PROMPTS)
        except Exception as e:
            logger.warning(f"Suggested prompts failed: {e}")
            await platform.send_text(CONTINUE_FALLBACK_TEXT)

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    @staticmethod
    def _is_termination(error: Exception) -> bool:
        message = str(error).lower()
        error_type = str(getattr(error, "error_type", None) or "").lower()
        return "terminated" in message or "server_error" in error_type

    async def _handle_failure(self, error: Exception, platform: ChatPlatform, state: ConversationState) -> None:
        logger.error(
            f"Model/stream error: {error} (status={getattr(error, 'status_code', None)}, "
            f"type={getattr(error, 'error_type', None)}, param={getattr(error, 'param', None)})"
        )
        try:
            if self._is_termination(error):
                recovered = await recover_from_terminated(
                    self.adapter,
                    state.last_seen_response_id,
                    self.config.poll_interval_seconds,
                    self.config.poll_max_seconds,
                    self.config.continuation_min_tokens,
                    self.config.continuation_max_tokens,
                )
                text = get_text_from_response(recovered)
                if text:
                    await platform.send_text(text)
                    return
                await self._suggest_continue(platform)
                return

            await platform.send_text(FAILURE_MESSAGE)
        except Exception as e:
            logger.error(f"Failed to report error to the thread: {e}")
