"""Evolution API adapter - validate and normalize webhook payloads."""

import re
from datetime import datetime, timezone
from typing import Any

from .models import NormalizedInbound

MESSAGES_UPSERT = "messages.upsert"

_GROUP_SUFFIX = "@g.us"


class InvalidPayloadError(Exception):
    """Raised when Evolution payload has invalid shape."""

    pass


def phone_from_jid(remote_jid: str) -> str:
    """5511999998888:12@s.whatsapp.net -> 5511999998888"""
    user = remote_jid.split("@", 1)[0].split(":", 1)[0]
    return re.sub(r"\D", "", user)


def _nested(message: dict[str, Any], field: str, attr: str) -> Any:
    inner = message.get(field)
    if not isinstance(inner, dict):
        return None
    return inner.get(attr)


def _extract_text(message_type: str, message: dict[str, Any]) -> str | None:
    if message_type == "conversation":
        return message.get("conversation")
    if message_type == "extendedTextMessage":
        return _nested(message, "extendedTextMessage", "text")
    # Menu replies from interactive messages
    if message_type == "buttonsResponseMessage":
        return _nested(message, "buttonsResponseMessage", "selectedDisplayText")
    if message_type == "listResponseMessage":
        return _nested(message, "listResponseMessage", "title")
    return None


def normalize(payload: dict[str, Any]) -> NormalizedInbound:
    """Normalize an Evolution messages.upsert payload.

    Args:
        payload: Raw webhook payload from Evolution API.

    Returns:
        NormalizedInbound with the sender phone and text (PII).

    Raises:
        InvalidPayloadError: If required fields are missing or invalid.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload is not an object")

    event = payload.get("event")
    if event and str(event).lower().replace("_", ".") != MESSAGES_UPSERT:
        raise InvalidPayloadError("unsupported event")

    instance = payload.get("instance")
    if not instance or not isinstance(instance, str):
        raise InvalidPayloadError("missing instance")

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise InvalidPayloadError("data is not an object")
    key = data.get("key") or {}
    if not isinstance(key, dict):
        raise InvalidPayloadError("key is not an object")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid", "")
    if not remote_jid or not isinstance(remote_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    phone = phone_from_jid(remote_jid)
    if not phone:
        raise InvalidPayloadError("remoteJid has no phone number")

    message_type = str(data.get("messageType", "unknown"))
    message = data.get("message") or {}
    if not isinstance(message, dict):
        raise InvalidPayloadError("message is not an object")
    text = _extract_text(message_type, message)

    return NormalizedInbound(
        message_id=message_id,
        instance=instance,
        received_at=datetime.now(timezone.utc),
        kind=message_type,
        remote_jid=remote_jid,
        phone=phone,
        text=text if isinstance(text, str) else None,
        from_me=bool(key.get("fromMe", False)),
        is_group=remote_jid.endswith(_GROUP_SUFFIX),
    )
