"""
File plumbing between the chat platform and the LLM file store.

Inbound: attachments are downloaded from the platform and uploaded once per
message (re-using ids recorded in thread metadata). Outbound: files the
model generated or cited are downloaded and shared in the thread.
"""

import logging
from typing import Any, Dict, List, Optional

from adapters.llm.base import ResponsesAdapter

from .models import CONTEXT_MARKER_EVENT, Attachment, FileTracking, GeneratedFile, ThreadMessage
from .platform import ChatPlatform

logger = logging.getLogger(__name__)

MAX_CITED_UPLOADS = 3


def is_pdf(attachment: Attachment) -> bool:
    return attachment.mimetype == "application/pdf" or attachment.name.lower().endswith(".pdf")


def content_item_for(attachment: Attachment, file_id: str) -> Optional[Dict[str, Any]]:
    """
    Input content part referencing an uploaded attachment.

    Images and PDFs are given to the model directly; anything else is only
    reachable through code_interpreter and has no content part.
    """
    if attachment.mimetype.startswith("image/"):
        return {"type": "input_image", "detail": "auto", "file_id": file_id}
    if is_pdf(attachment):
        return {"type": "input_file", "file_id": file_id, "filename": attachment.name}
    return None


def extract_previous_uploads(messages: List[ThreadMessage]) -> Dict[str, str]:
    """Map platform file id -> LLM file id from context markers in the thread."""
    uploads: Dict[str, str] = {}
    for message in messages:
        metadata = message.metadata
        if not isinstance(metadata, dict):
            continue
        if (metadata.get("eventType") or metadata.get("event_type")) != CONTEXT_MARKER_EVENT:
            continue
        for ref in metadata.get("uploadedFileRefs") or []:
            if isinstance(ref, dict) and ref.get("platform_file_id") and ref.get("llm_file_id"):
                uploads[ref["platform_file_id"]] = ref["llm_file_id"]
    return uploads


class FileUploadManager:
    """Uploads each attachment at most once while handling a message."""

    def __init__(
        self,
        adapter: ResponsesAdapter,
        platform: ChatPlatform,
        previous_uploads: Optional[Dict[str, str]] = None,
        tracking: Optional[FileTracking] = None,
    ):
        self.adapter = adapter
        self.platform = platform
        self.previous_uploads = dict(previous_uploads or {})
        self.tracking = tracking or FileTracking()
        self._cache: Dict[str, Optional[Dict[str, Any]]] = {}

    async def upload_once(self, attachment: Attachment) -> Optional[Dict[str, Any]]:
        """
        Make an attachment available to the model.

        Returns:
            ``{"content_item", "file_id"}`` or None when the upload failed
        """
        key = attachment.id or attachment.url or attachment.name
        if key in self._cache:
            return self._cache[key]

        reused = self.previous_uploads.get(attachment.id)
        if reused:
            result = self._register(attachment, reused)
            self._cache[key] = result
            return result

        try:
            data = await self.platform.download_attachment(attachment)
            file_id = await self.adapter.upload_file(data, attachment.name, purpose="user_data")
        except Exception as e:
            logger.debug(f"Upload failed for attachment {attachment.name}: {e}")
            return None

        result = self._register(attachment, file_id)
        self.tracking.uploaded_files.append(
            {
                "platform_file_id": attachment.id,
                "llm_file_id": file_id,
                "mimetype": attachment.mimetype,
                "filename": attachment.name,
                "size": attachment.size,
            }
        )
        self._cache[key] = result
        return result

    def _register(self, attachment: Attachment, file_id: str) -> Dict[str, Any]:
        item = content_item_for(attachment, file_id)
        if item is None:
            self.tracking.add_code_file(file_id, attachment.name or "file")
        return {"content_item": item, "file_id": file_id}


class FileDelivery:
    """Shares generated and cited files in the thread."""

    def __init__(self, adapter: ResponsesAdapter, platform: ChatPlatform):
        self.adapter = adapter
        self.platform = platform

    async def deliver_generated(self, files: List[GeneratedFile]) -> int:
        """
        Download generated files and upload them to the platform.

        Returns:
            Number of files delivered; failures are logged and skipped
        """
        delivered = 0
        for generated in files:
            filename = generated.filename or f"{generated.file_id}.bin"
            try:
                if generated.container_id:
                    data = await self.adapter.download_container_file(generated.container_id, generated.file_id)
                else:
                    data = await self.adapter.download_file(generated.file_id)
                await self.platform.upload_file(data, filename)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to deliver generated file {generated.file_id}: {e}")
        if delivered:
            logger.info(f"Delivered {delivered} generated file(s)")
        return delivered

    async def deliver_citations(self, citations: Dict[str, str], filenames: List[str]) -> None:
        """Attach up to three cited files and post a ``Sources:`` line."""
        uploaded = 0
        for file_id, filename in citations.items():
            if uploaded >= MAX_CITED_UPLOADS:
                break
            try:
                data = await self.adapter.download_file(file_id)
                await self.platform.upload_file(data, filename or f"{file_id}.bin")
                uploaded += 1
            except Exception as e:
                logger.info(f"Failed to fetch/upload cited file {file_id}: {e}")

        if filenames:
            try:
                await self.platform.send_text(f"Sources: {', '.join(filenames)}")
            except Exception as e:
                logger.info(f"Failed to post sources line: {e}")
