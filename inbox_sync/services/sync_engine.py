from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Protocol

import structlog

from inbox_sync.core.errors import (
    ConfigurationError,
    ConflictResolutionError,
    TransientFetchError,
)
from inbox_sync.core.sync_config import SyncConfig
from inbox_sync.schemas.messages import (
    CanonicalMessage,
    ConversationKey,
    Direction,
    InstanceDescriptor,
)
from inbox_sync.schemas.sync import IngestResult, SyncError, SyncReport
from inbox_sync.services.conversation_keys import contact_number
from inbox_sync.services.gateway_client import GatewayClientError
from inbox_sync.services.normalizer import normalize, record_external_id
from inbox_sync.services.store import ConversationFields, ConversationRow, ConversationStore
from inbox_sync.utils.time import utc_now

logger = structlog.get_logger(__name__)


class MessageGateway(Protocol):
    async def fetch_messages(
        self, instance_name: str, page_limit: int, page_offset: int
    ) -> list[dict[str, Any]]: ...

    async def fetch_instances(self) -> list[dict[str, Any]]: ...


class KeyedLocks:
    """One asyncio.Lock per conversation key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[ConversationKey, asyncio.Lock] = {}
        self._users: dict[ConversationKey, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: ConversationKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def _chunked(items: list[CanonicalMessage], size: int) -> Iterable[list[CanonicalMessage]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def dedupe_messages(messages: list[CanonicalMessage]) -> list[CanonicalMessage]:
    """Keep one message per external id; a later occurrence replaces an earlier one."""
    unique: dict[str, CanonicalMessage] = {}
    for message in messages:
        unique.pop(message.external_id, None)
        unique[message.external_id] = message
    return list(unique.values())


def partition_by_key(
    messages: list[CanonicalMessage],
) -> dict[ConversationKey, list[CanonicalMessage]]:
    partitions: dict[ConversationKey, list[CanonicalMessage]] = defaultdict(list)
    for message in messages:
        partitions[message.conversation_key].append(message)
    for key in partitions:
        partitions[key].sort(key=lambda item: item.sort_key())
    return dict(partitions)


def conversation_fields(ordered: list[CanonicalMessage]) -> ConversationFields:
    """Summary columns for one conversation, from its messages sorted oldest first."""
    latest = ordered[-1]
    is_group = latest.is_group
    push_name = None
    if not is_group:
        # group push names belong to participants, not to the group
        for message in reversed(ordered):
            if message.direction == Direction.inbound and message.push_name:
                push_name = message.push_name
                break
    if push_name:
        name = push_name
    elif is_group:
        name = f"Group {contact_number(latest.remote_id)}"
    else:
        name = contact_number(latest.remote_id)
    return ConversationFields(
        contact_name=name[:255],
        contact_name_authoritative=bool(push_name),
        metadata={
            "is_group": is_group,
            "remote_id": latest.remote_id,
            "message_types": {message.message_type.value: True for message in ordered},
        },
        sync_status="synced",
        synced_at=utc_now(),
    )


class SyncEngine:
    """Single write path for bulk sync and per-event ingestion."""

    def __init__(
        self,
        config: SyncConfig,
        gateway: MessageGateway | None,
        store: ConversationStore,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.store = store
        self._locks = KeyedLocks()

    async def _require_instance(self, instance_ref: int | str | None) -> InstanceDescriptor:
        if instance_ref is None or not str(instance_ref).strip():
            raise ConfigurationError("integration instance id is required")
        instance = await self.store.get_instance(instance_ref)
        if not instance:
            raise ConfigurationError(f"unknown integration instance {instance_ref!r}")
        return instance

    def _normalize(self, raw: Any, instance: InstanceDescriptor) -> CanonicalMessage:
        return normalize(raw, instance, self.config.outbound_sender_type)

    @asynccontextmanager
    async def _conversation_guard(self, key: ConversationKey) -> AsyncIterator[None]:
        if self.store.supports_atomic_upsert:
            yield
            return
        async with self._locks.hold(key):
            yield

    async def _upsert_conversation(
        self, key: ConversationKey, ordered: list[CanonicalMessage]
    ) -> ConversationRow:
        async with self._conversation_guard(key):
            return await self.store.upsert_conversation(key, conversation_fields(ordered))

    async def _fetch_page(self, instance_key: str, page_offset: int) -> list[dict[str, Any]]:
        attempts = max(self.config.fetch_retries, 0) + 1
        last_exc: TransientFetchError | None = None
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    self.gateway.fetch_messages(
                        instance_key, self.config.page_limit, page_offset
                    ),
                    timeout=self.config.fetch_timeout_sec,
                )
            except asyncio.TimeoutError:
                last_exc = TransientFetchError(
                    f"page fetch timed out after {self.config.fetch_timeout_sec}s",
                    page_offset=page_offset,
                )
            except TransientFetchError as exc:
                last_exc = exc
            logger.warning(
                "gateway_page_retry",
                instance_key=instance_key,
                page_offset=page_offset,
                attempt=attempt + 1,
                error=str(last_exc),
            )
            if attempt + 1 < attempts:
                await asyncio.sleep(self.config.retry_backoff_sec * (attempt + 1))
        raise last_exc

    async def fetch_all(
        self, instance: InstanceDescriptor, report: SyncReport
    ) -> list[dict[str, Any]]:
        """Walk the gateway pages for one instance.

        Stops on a short page, an empty page, a page made only of ids seen
        already, after ``max_pages`` pages, or after too many failed pages
        in a row. Failed pages are recorded in the report and skipped.
        """
        page_limit = self.config.page_limit
        seen: set[str] = set()
        records: list[dict[str, Any]] = []
        page_offset = 0
        failures = 0

        for _ in range(self.config.max_pages):
            try:
                page = await self._fetch_page(instance.instance_key, page_offset)
            except TransientFetchError as exc:
                failures += 1
                report.errors.append(
                    SyncError(stage="fetch", message=str(exc), page_offset=page_offset)
                )
                if failures >= self.config.max_consecutive_page_failures:
                    logger.warning(
                        "gateway_fetch_abandoned",
                        instance_id=instance.instance_id,
                        page_offset=page_offset,
                        failures=failures,
                    )
                    break
                page_offset += page_limit
                continue
            except GatewayClientError as exc:
                report.errors.append(
                    SyncError(stage="fetch", message=str(exc), page_offset=page_offset)
                )
                break

            failures = 0
            if not page:
                break
            page_ids = [record_external_id(record) for record in page]
            if not any(page_id not in seen for page_id in page_ids):
                break
            seen.update(page_ids)
            records.extend(page)
            if len(page) < page_limit:
                break
            page_offset += page_limit
        return records

    async def _store_partition(
        self,
        key: ConversationKey,
        ordered: list[CanonicalMessage],
        report: SyncReport,
    ) -> int:
        conversation = await self._upsert_conversation(key, ordered)
        stored: list[CanonicalMessage] = []
        for batch in _chunked(ordered, self.config.message_batch_size):
            try:
                await self.store.upsert_messages(conversation.id, batch)
                stored.extend(batch)
                continue
            except ConflictResolutionError as exc:
                logger.warning(
                    "message_batch_rejected",
                    conversation_key=str(key),
                    size=len(batch),
                    error=str(exc),
                )
            for message in batch:
                try:
                    await self.store.upsert_messages(conversation.id, [message])
                    stored.append(message)
                except ConflictResolutionError as exc:
                    report.errors.append(
                        SyncError(
                            stage="message",
                            message=str(exc),
                            conversation_key=str(key),
                            external_id=message.external_id,
                        )
                    )

        if stored:
            latest = max(stored, key=lambda item: item.sort_key())
            await self.store.apply_message_stats(
                conversation.id, latest, set_count=len(stored)
            )
        return len(stored)

    async def sync_all(
        self,
        instance_ref: int | str | None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncReport:
        """Bulk-sync every message the gateway holds for one instance.

        Only configuration problems raise. Fetch, partition and message
        failures are collected in the returned report.
        """
        if instance_ref is None or not str(instance_ref).strip():
            raise ConfigurationError("integration instance id is required")
        self.config.validate()
        if self.gateway is None:
            raise ConfigurationError("a gateway client is required for bulk sync")
        instance = await self._require_instance(instance_ref)

        report = SyncReport(
            instance_id=instance.instance_id,
            instance_key=instance.instance_key,
            started_at=utc_now(),
        )
        report.run_id = await self.store.start_sync_run(instance.instance_id)
        logger.info(
            "sync_started",
            instance_id=instance.instance_id,
            instance_key=instance.instance_key,
            run_id=report.run_id,
        )
        await self.store.log_event(
            "info",
            "sync_started",
            data={"run_id": report.run_id},
            instance_id=instance.instance_id,
        )

        records = await self.fetch_all(instance, report)
        report.fetched_messages = len(records)
        canonical = dedupe_messages([self._normalize(record, instance) for record in records])
        partitions = partition_by_key(canonical)
        report.total_conversations = len(partitions)

        for key in sorted(partitions):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(
                    "sync_cancelled",
                    instance_id=instance.instance_id,
                    processed_conversations=report.processed_conversations,
                )
                break
            try:
                processed = await self._store_partition(key, partitions[key], report)
            except Exception as exc:
                logger.exception(
                    "sync_partition_failed", conversation_key=str(key), error=str(exc)
                )
                report.errors.append(
                    SyncError(stage="conversation", message=str(exc), conversation_key=str(key))
                )
                continue
            report.processed_conversations += 1
            report.processed_messages += processed

        report.finished_at = utc_now()
        await self.store.finish_sync_run(report.run_id, report)
        logger.info(
            "sync_finished",
            instance_id=instance.instance_id,
            run_id=report.run_id,
            fetched=report.fetched_messages,
            messages=report.processed_messages,
            conversations=report.processed_conversations,
            errors=len(report.errors),
            cancelled=report.cancelled,
        )
        await self.store.log_event(
            "info" if report.clean else "warning",
            "sync_finished",
            data={
                "run_id": report.run_id,
                "fetched": report.fetched_messages,
                "messages": report.processed_messages,
                "conversations": report.processed_conversations,
                "errors": len(report.errors),
                "cancelled": report.cancelled,
            },
            instance_id=instance.instance_id,
        )
        return report

    async def sync_all_instances(
        self, cancel_event: asyncio.Event | None = None
    ) -> list[SyncReport]:
        reports: list[SyncReport] = []
        for instance in await self.store.list_instances():
            if cancel_event is not None and cancel_event.is_set():
                break
            reports.append(await self.sync_all(instance.instance_id, cancel_event))
        return reports

    async def discover_instances(
        self, account_id: str, integration_type: str | None = None
    ) -> list[InstanceDescriptor]:
        """Register every instance the gateway knows about under one account."""
        if not account_id:
            raise ConfigurationError("account id is required to register instances")
        self.config.validate()
        if self.gateway is None:
            raise ConfigurationError("a gateway client is required to discover instances")
        registered: list[InstanceDescriptor] = []
        for item in await self.gateway.fetch_instances():
            name = item.get("name") or item.get("instanceName")
            if not name:
                continue
            registered.append(
                await self.store.upsert_instance(
                    account_id,
                    str(name),
                    integration_type or self.config.integration_type,
                    display_name=item.get("profileName"),
                )
            )
        logger.info("instances_registered", account_id=account_id, count=len(registered))
        return registered

    async def ingest_one(
        self, raw: Any, instance_ref: int | str | None
    ) -> IngestResult:
        """Incremental path: one gateway record through the same upserts as bulk sync."""
        instance = await self._require_instance(instance_ref)
        message = self._normalize(raw, instance)
        conversation = await self._upsert_conversation(message.conversation_key, [message])
        inserted = await self.store.upsert_messages(conversation.id, [message])
        await self.store.apply_message_stats(
            conversation.id, message, add_count=len(inserted)
        )
        return IngestResult(
            conversation_id=conversation.id,
            external_id=message.external_id,
            inserted=bool(inserted),
        )

    async def mark_deleted(self, external_id: str) -> bool:
        conversation_id = await self.store.mark_message_deleted(external_id, utc_now())
        if conversation_id is None:
            return False
        await self.store.refresh_last_message(conversation_id)
        return True

    async def update_status(self, external_id: str, status: str) -> bool:
        return await self.store.update_message_status(external_id, status)
