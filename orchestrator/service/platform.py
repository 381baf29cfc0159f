"""
Chat platform capability contract.

The orchestrator talks to the chat platform only through ``ChatPlatform``,
bound to the thread of one incoming message. ``BufferedChatPlatform``
records everything in memory and backs the HTTP chat endpoint and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import Attachment, ThreadMessage

logger = logging.getLogger(__name__)


class StreamController(ABC):
    """Handle on one incrementally delivered message."""

    @abstractmethod
    async def append(self, text: str) -> None:
        """Append text to the message being delivered."""

    @abstractmethod
    async def stop(self) -> Optional[str]:
        """
        Finish delivery.

        Returns:
            Reference of the delivered message, if any text was sent
        """


class ChatPlatform(ABC):
    """Outbound and thread-history capabilities for one conversation thread."""

    @abstractmethod
    async def send_text(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Post a message; returns its reference."""

    @abstractmethod
    async def start_stream(self) -> StreamController:
        """Begin an incrementally delivered message."""

    @abstractmethod
    async def update_message_metadata(self, message_ref: str, metadata: Dict[str, Any]) -> None:
        """Attach metadata to a previously posted message."""

    @abstractmethod
    async def react(self, emoji: str) -> None:
        """Add a reaction to the incoming message."""

    @abstractmethod
    async def upload_file(self, data: bytes, filename: str, caption: Optional[str] = None) -> None:
        """Share a file in the thread."""

    @abstractmethod
    async def set_status(self, status: str, loading_messages: Optional[List[str]] = None) -> None:
        """Show a transient assistant status."""

    @abstractmethod
    async def set_title(self, title: str) -> None:
        """Set the thread title."""

    @abstractmethod
    async def set_suggested_prompts(self, title: str, prompts: List[Dict[str, str]]) -> None:
        """Offer clickable follow-up prompts (``{title, message}`` pairs)."""

    @abstractmethod
    async def fetch_thread(self, limit: int) -> List[ThreadMessage]:
        """Return up to ``limit`` prior messages of the thread, oldest first."""

    @abstractmethod
    async def download_attachment(self, attachment: Attachment) -> bytes:
        """Download the content of a message attachment."""


# ============================================================================
# In-memory implementation
# ============================================================================


class BufferedStreamController(StreamController):
    """Collects appended text and posts it as one message on ``stop``."""

    def __init__(self, platform: "BufferedChatPlatform"):
        self._platform = platform
        self._parts: List[str] = []
        self._stopped = False
        self.message_ref: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def append(self, text: str) -> None:
        if self._stopped:
            raise RuntimeError("Stream already stopped")
        self._parts.append(text)

    async def stop(self) -> Optional[str]:
        if self._stopped:
            return self.message_ref
        self._stopped = True
        if self._parts:
            self.message_ref = self._platform._record_message(self.text, None, streamed=True)
        return self.message_ref


class BufferedChatPlatform(ChatPlatform):
    """
    Chat platform that keeps every outbound action in memory.

    Thread history and attachment bytes are supplied up front.
    """

    def __init__(
        self,
        history: Optional[List[ThreadMessage]] = None,
        attachment_data: Optional[Dict[str, bytes]] = None,
    ):
        self.history = list(history or [])
        self.attachment_data = dict(attachment_data or {})
        self.messages: List[Dict[str, Any]] = []
        self.statuses: List[Dict[str, Any]] = []
        self.titles: List[str] = []
        self.reactions: List[str] = []
        self.uploads: List[Dict[str, Any]] = []
        self.suggested_prompts: List[Dict[str, Any]] = []
        self._counter = 0

    def _record_message(self, text: str, metadata: Optional[Dict[str, Any]], streamed: bool = False) -> str:
        self._counter += 1
        ref = f"msg-{self._counter}"
        self.messages.append({"ref": ref, "text": text, "metadata": metadata, "streamed": streamed})
        return ref

    def find_message(self, message_ref: str) -> Optional[Dict[str, Any]]:
        for message in self.messages:
            if message["ref"] == message_ref:
                return message
        return None

    async def send_text(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self._record_message(text, metadata)

    async def start_stream(self) -> StreamController:
        return BufferedStreamController(self)

    async def update_message_metadata(self, message_ref: str, metadata: Dict[str, Any]) -> None:
        message = self.find_message(message_ref)
        if message is None:
            logger.warning(f"Cannot attach metadata to unknown message {message_ref}")
            return
        message["metadata"] = metadata

    async def react(self, emoji: str) -> None:
        self.reactions.append(emoji)

    async def upload_file(self, data: bytes, filename: str, caption: Optional[str] = None) -> None:
        self.uploads.append({"filename": filename, "size": len(data), "caption": caption})

    async def set_status(self, status: str, loading_messages: Optional[List[str]] = None) -> None:
        self.statuses.append({"status": status, "loading_messages": loading_messages})

    async def set_title(self, title: str) -> None:
        self.titles.append(title)

    async def set_suggested_prompts(self, title: str, prompts: List[Dict[str, str]]) -> None:
        self.suggested_prompts.append({"title": title, "prompts": prompts})

    async def fetch_thread(self, limit: int) -> List[ThreadMessage]:
        return self.history[-limit:] if limit > 0 else []

    async def download_attachment(self, attachment: Attachment) -> bytes:
        if attachment.id not in self.attachment_data:
            raise KeyError(f"No data for attachment {attachment.id}")
        return self.attachment_data[attachment.id]

    def transcript(self) -> Dict[str, Any]:
        """Everything recorded so far."""
        return {
            "messages": self.messages,
            "statuses": self.statuses,
            "titles": self.titles,
            "reactions": self.reactions,
            "uploads": self.uploads,
            "suggested_prompts": self.suggested_prompts,
        }
