"""Pure helpers for walking a Gmail MIME part tree."""

import base64
import binascii
import logging
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from mailbuddy.api.sync.models import MessagePart

logger = logging.getLogger(__name__)


def decode_base64url(data: Optional[str]) -> str:
    """Decode Gmail's unpadded URL-safe base64 body data."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"[MIME] Could not decode body data: {e}")
        return ""


def extract_content_from_parts(part: "MessagePart") -> Dict[str, str]:
    """Collect the text/plain and text/html bodies of a part tree.

    Sibling leaves of the same type are concatenated in document order.
    Parts carrying a filename are attachments and never contribute body text.
    """
    result = {"text": "", "html": ""}
    _walk(part, result, depth=0)
    return result


def _walk(part: "MessagePart", result: Dict[str, str], depth: int) -> None:
    if part.parts:
        logger.debug(f"[MIME] {'  ' * depth}{part.mime_type} with {len(part.parts)} parts")
        for child in part.parts:
            _walk(child, result, depth + 1)
        return

    if part.filename:
        return

    mime_type = (part.mime_type or "").lower()
    if mime_type == "text/plain":
        result["text"] += decode_base64url(part.body.data)
    elif mime_type == "text/html":
        result["html"] += decode_base64url(part.body.data)
