from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class WebhookEnvelope(BaseModel):
    event_type: str = Field(
        default="",
        validation_alias=AliasChoices("event", "eventType", "event_type"),
    )
    instance: str | int | None = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceId", "instance_id", "instanceName"),
    )
    payload: Any = Field(
        default=None,
        validation_alias=AliasChoices("data", "payload"),
    )
