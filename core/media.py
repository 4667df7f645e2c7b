"""
Inbound media helpers: caption-aware chat input and file attachments.

The channel layer hands over its raw message body in InboundMessage.raw,
e.g. {"message": {"imageMessage": {"caption": "..."}, "base64": "...",
"mediaUrl": "...", "mimetype": "image/png", "fileName": "a.png"}}.
"""
from __future__ import annotations

import base64
import binascii
import mimetypes
import structlog
from typing import Any, Optional

import httpx

from models.schemas import Attachment, InboundMessage

logger = structlog.get_logger()

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _body(message: InboundMessage) -> dict[str, Any]:
    body = (message.raw or {}).get("message")
    return body if isinstance(body, dict) else {}


def _image(body: dict[str, Any]) -> tuple[Optional[dict], Optional[dict]]:
    """(imageMessage, container holding it) for plain or view-once images."""
    if isinstance(body.get("imageMessage"), dict):
        return body["imageMessage"], body
    inner = (body.get("viewOnceMessageV2") or {}).get("message") or {}
    if isinstance(inner.get("imageMessage"), dict):
        return inner["imageMessage"], inner
    return None, None


def build_chat_input(content: str, message: Optional[InboundMessage]) -> str:
    """
    Append image captions to the text sent to the provider.

    The user's caption and a machine-generated one (imageCaption) are joined
    with " | ". Media placeholders of the form "imageMessage|<url>" keep their
    first two segments and get the captions as a third.
    """
    if message is None:
        return content
    image, container = _image(_body(message))
    if image is None:
        return content

    user_caption = image.get("caption")
    ai_caption = container.get("imageCaption")
    captions = [c for c in (user_caption,) if c]
    if ai_caption and ai_caption != user_caption:
        captions.append(ai_caption)
    if not captions:
        return content

    caption_text = " | ".join(captions)
    if "imageMessage|" in content or "viewOnceMessageV2|" in content:
        parts = content.split("|")
        if len(parts) >= 2:
            return f"{parts[0]}|{parts[1]}|{caption_text}"
        return f"{content}|{caption_text}"
    return f"{content}\n{caption_text}" if content else caption_text


def _filename(message: InboundMessage, body: dict[str, Any], content_type: str) -> str:
    if body.get("fileName"):
        return str(body["fileName"])
    extension = (mimetypes.guess_extension(content_type) or ".bin").lstrip(".")
    return f"{message.key_id or 'file'}.{extension}"


async def resolve_attachment(message: Optional[InboundMessage],
                             client: httpx.AsyncClient = None) -> Optional[Attachment]:
    """Decode inline base64 media or fetch mediaUrl once; None when there is no media."""
    if message is None:
        return None
    body = _body(message)
    encoded = body.get("base64")
    media_url = body.get("mediaUrl")
    content_type = (
        body.get("mimetype")
        or (mimetypes.guess_type(media_url)[0] if isinstance(media_url, str) else None)
        or DEFAULT_CONTENT_TYPE
    )

    if encoded:
        try:
            data = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            logger.warning("attachment_decode_failed", key_id=message.key_id, error=str(e))
            return None
        return Attachment(filename=_filename(message, body, content_type),
                          content_type=content_type, data=data)

    if isinstance(media_url, str) and media_url.startswith(("http://", "https://")):
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.get(media_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("attachment_fetch_failed", url=media_url, error=str(e))
            return None
        finally:
            if owns_client:
                await client.aclose()
        return Attachment(filename=_filename(message, body, content_type),
                          content_type=content_type, data=response.content)

    return None
