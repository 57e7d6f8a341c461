from __future__ import annotations

import hashlib
import json
from typing import Any

from inbox_sync.schemas.messages import (
    CanonicalMessage,
    Direction,
    InstanceDescriptor,
    MessageType,
    SenderType,
)
from inbox_sync.services.conversation_keys import (
    UNKNOWN_REMOTE_ID,
    canonical_remote_id,
    is_group_id,
    resolve_key,
)
from inbox_sync.utils.time import EPOCH, parse_timestamp

UNKNOWN_TAG = "[unknown]"

# Containers that only wrap another message payload.
WRAPPER_VARIANTS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)
MAX_UNWRAP_DEPTH = 4

MEDIA_TAGS = {
    "imageMessage": "Image",
    "videoMessage": "Video",
    "ptvMessage": "Video",
    "audioMessage": "Audio",
}
FIXED_TAGS = {
    "locationMessage": "[Location]",
    "liveLocationMessage": "[Location]",
    "contactMessage": "[Contact]",
    "contactsArrayMessage": "[Contact]",
    "stickerMessage": "[Sticker]",
    "reactionMessage": "[Reaction]",
}

MESSAGE_TYPE_MAP: dict[str, MessageType] = {
    "conversation": MessageType.text,
    "extendedTextMessage": MessageType.text,
    "buttonsMessage": MessageType.text,
    "buttonsResponseMessage": MessageType.text,
    "listMessage": MessageType.text,
    "listResponseMessage": MessageType.text,
    "templateMessage": MessageType.text,
    "templateButtonReplyMessage": MessageType.text,
    "interactiveMessage": MessageType.text,
    "interactiveResponseMessage": MessageType.text,
    "pollCreationMessage": MessageType.text,
    "pollCreationMessageV2": MessageType.text,
    "pollCreationMessageV3": MessageType.text,
    "pollUpdateMessage": MessageType.text,
    "groupInviteMessage": MessageType.text,
    "productMessage": MessageType.text,
    "protocolMessage": MessageType.text,
    "editedMessage": MessageType.text,
    "commentMessage": MessageType.text,
    "reactionMessage": MessageType.text,
    "imageMessage": MessageType.image,
    "viewOnceMessageV2": MessageType.image,
    "audioMessage": MessageType.audio,
    "videoMessage": MessageType.video,
    "ptvMessage": MessageType.video,
    "documentMessage": MessageType.document,
    "documentWithCaptionMessage": MessageType.document,
    "contactMessage": MessageType.contact,
    "contactsArrayMessage": MessageType.contact,
    "locationMessage": MessageType.location,
    "liveLocationMessage": MessageType.location,
    "stickerMessage": MessageType.sticker,
}

_STATUS_MAP = {
    "ERROR": "failed",
    "PENDING": "pending",
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
    "PLAYED": "read",
    "DELETED": "deleted",
}
_NUMERIC_STATUS = ["ERROR", "PENDING", "SERVER_ACK", "DELIVERY_ACK", "READ", "PLAYED"]
_IGNORED_PAYLOAD_KEYS = {"messageContextInfo", "senderKeyDistributionMessage"}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _clean_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return False


def classify(variant: str | None) -> MessageType:
    if not variant:
        return MessageType.unknown
    return MESSAGE_TYPE_MAP.get(variant, MessageType.text)


def map_gateway_status(value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(_NUMERIC_STATUS):
            value = _NUMERIC_STATUS[value]
    cleaned = _clean_str(value)
    if not cleaned:
        return "delivered"
    return _STATUS_MAP.get(cleaned.upper(), "delivered")


def unwrap_payload(payload: dict[str, Any]) -> dict[str, Any]:
    current = payload
    for _ in range(MAX_UNWRAP_DEPTH):
        for wrapper in WRAPPER_VARIANTS:
            inner = _as_dict(_as_dict(current.get(wrapper)).get("message"))
            if inner:
                current = inner
                break
        else:
            return current
    return current


def detect_variant(payload: dict[str, Any], declared: str | None) -> str | None:
    for key in payload:
        if key in MESSAGE_TYPE_MAP:
            return key
    if declared:
        return declared
    for key in payload:
        if key not in _IGNORED_PAYLOAD_KEYS:
            return key
    return None


def extract_content(payload: dict[str, Any]) -> str:
    text = _clean_str(payload.get("conversation"))
    if text:
        return text

    extended = _as_dict(payload.get("extendedTextMessage"))
    text = _clean_str(extended.get("text"))
    if text:
        return text

    for variant, tag in MEDIA_TAGS.items():
        if variant in payload:
            caption = _clean_str(_as_dict(payload.get(variant)).get("caption"))
            return f"[{tag}] {caption}" if caption else f"[{tag}]"

    if "documentMessage" in payload:
        document = _as_dict(payload.get("documentMessage"))
        filename = (
            _clean_str(document.get("fileName"))
            or _clean_str(document.get("title"))
            or "Unknown file"
        )
        caption = _clean_str(document.get("caption"))
        content = f"[Document: {filename}]"
        return f"{content} {caption}" if caption else content

    for variant, tag in FIXED_TAGS.items():
        if variant in payload:
            return tag

    return UNKNOWN_TAG


def fallback_external_id(raw: dict[str, Any]) -> str:
    digest = hashlib.sha1(
        json.dumps(raw, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"synthetic-{digest}"


def record_external_id(raw: Any) -> str:
    record = _as_dict(raw)
    key = _as_dict(record.get("key"))
    return _clean_str(key.get("id")) or fallback_external_id(record)


def normalize(
    raw: Any,
    instance: InstanceDescriptor,
    outbound_sender_type: SenderType = SenderType.agent,
) -> CanonicalMessage:
    """Map one gateway message record onto a CanonicalMessage.

    Pure and total: absent or oddly shaped fields fall back to the most
    specific default instead of raising.
    """
    record = _as_dict(raw)
    key = _as_dict(record.get("key"))

    remote_id = _clean_str(key.get("remoteJid")) or _clean_str(record.get("remoteJid"))
    participant = _clean_str(key.get("participant")) or _clean_str(record.get("participant"))
    push_name = _clean_str(record.get("pushName"))
    outbound = _coerce_bool(key.get("fromMe"))

    payload = unwrap_payload(_as_dict(record.get("message")))
    variant = detect_variant(payload, _clean_str(record.get("messageType")))

    if outbound:
        direction = Direction.outbound
        sender_type = (
            outbound_sender_type
            if outbound_sender_type != SenderType.contact
            else SenderType.agent
        )
    else:
        direction = Direction.inbound
        sender_type = SenderType.contact

    canonical_remote = canonical_remote_id(remote_id)
    fallback_identity = remote_id or UNKNOWN_REMOTE_ID

    return CanonicalMessage(
        external_id=record_external_id(record),
        conversation_key=resolve_key(
            instance.account_id,
            instance.integration_type,
            instance.instance_id,
            remote_id,
        ),
        remote_id=canonical_remote,
        is_group=is_group_id(remote_id),
        content=extract_content(payload),
        message_type=classify(variant),
        direction=direction,
        sender_type=sender_type,
        sender_display_name=push_name or participant or fallback_identity,
        sender_identifier=participant or push_name or fallback_identity,
        push_name=push_name,
        variant=variant,
        occurred_at=parse_timestamp(record.get("messageTimestamp")) or EPOCH,
        status=map_gateway_status(record.get("status")),
        raw_payload=record,
    )
