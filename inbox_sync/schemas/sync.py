from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SyncError(BaseModel):
    stage: str
    message: str
    conversation_key: str | None = None
    external_id: str | None = None
    page_offset: int | None = None


class SyncReport(BaseModel):
    instance_id: int | None = None
    instance_key: str | None = None
    run_id: int | None = None
    fetched_messages: int = 0
    total_conversations: int = 0
    processed_messages: int = 0
    processed_conversations: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def clean(self) -> bool:
        return not self.errors and not self.cancelled


class IngestResult(BaseModel):
    conversation_id: int
    external_id: str
    inserted: bool
