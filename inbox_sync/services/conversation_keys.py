from __future__ import annotations

import re

from inbox_sync.schemas.messages import ConversationKey

USER_DOMAIN = "s.whatsapp.net"
GROUP_DOMAIN = "g.us"
UNKNOWN_REMOTE_ID = "unknown"

_DOMAIN_ALIASES = {
    "c.us": USER_DOMAIN,
    "whatsapp.net": USER_DOMAIN,
    USER_DOMAIN: USER_DOMAIN,
    GROUP_DOMAIN: GROUP_DOMAIN,
}
_PHONE_NOISE_RE = re.compile(r"[\s()+.-]")
_LEGACY_GROUP_RE = re.compile(r"^\d+-\d+$")


def canonical_remote_id(remote_id: str | None) -> str:
    """Collapse the textual variants of one chat id onto a single form.

    ``+62 811``, ``62811``, ``62811@c.us`` and ``62811:7@s.whatsapp.net``
    all become ``62811@s.whatsapp.net``; group ids keep ``@g.us``.
    """
    if not remote_id:
        return UNKNOWN_REMOTE_ID
    cleaned = str(remote_id).strip().lower()
    if not cleaned:
        return UNKNOWN_REMOTE_ID

    if "@" not in cleaned:
        if _LEGACY_GROUP_RE.match(cleaned):
            return f"{cleaned}@{GROUP_DOMAIN}"
        digits = _PHONE_NOISE_RE.sub("", cleaned)
        if digits.isdigit():
            return f"{digits}@{USER_DOMAIN}"
        return cleaned

    user, _, domain = cleaned.rpartition("@")
    domain = _DOMAIN_ALIASES.get(domain, domain)
    if domain == USER_DOMAIN:
        # device suffix: 62811:7@s.whatsapp.net
        user = user.split(":", 1)[0]
        user = user.lstrip("+")
    if not user:
        return UNKNOWN_REMOTE_ID
    return f"{user}@{domain}"


def is_group_id(remote_id: str | None) -> bool:
    return canonical_remote_id(remote_id).endswith(f"@{GROUP_DOMAIN}")


def contact_number(remote_id: str | None) -> str:
    return canonical_remote_id(remote_id).split("@", 1)[0]


def resolve_key(
    account_id: str,
    integration_type: str,
    integration_instance_id: int,
    remote_id: str | None,
) -> ConversationKey:
    return ConversationKey(
        account_id=str(account_id),
        integration_type=(integration_type or "whatsapp").strip().lower(),
        contact_id=canonical_remote_id(remote_id),
        integration_instance_id=int(integration_instance_id),
    )
