from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Protocol

from fhir_adapter.core.codec import CodecService, RecoveredEntry
from fhir_adapter.services.repository import FailureEntry

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COOLDOWN = timedelta(minutes=5)

FailureRetention = Literal["audit", "purge"]


class FailureStorage(Protocol):
    async def upsert_failure(
        self,
        *,
        source_id: int,
        original_timestamp: datetime | None,
        error: str,
        encrypted_natural_key: str | None,
        encrypted_payload: str,
    ) -> FailureEntry: ...

    async def fetch_retry_candidates(self, cutoff: datetime, limit: int) -> list[FailureEntry]: ...

    async def delete_failure(self, failure_id: int) -> None: ...

    async def update_failure_after_retry(self, failure_id: int, error: str | None, synced: bool) -> None: ...

    async def mark_failure_synced(self, failure_id: int, hashed_natural_key: str | None) -> None: ...

    async def count_failures(self, *, synced: bool | None = False) -> int: ...


def is_retry_eligible(entry: FailureEntry, cooldown: timedelta, now: datetime | None = None) -> bool:
    if entry.synced:
        return False
    if entry.last_attempt_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return entry.last_attempt_at <= now - cooldown


class FailureLedger:
    """Encrypted quarantine for source records whose processing failed.

    One entry exists per source id; repeated failures bump ``attempt_count``
    through the storage upsert instead of creating duplicates.
    """

    def __init__(
        self,
        storage: FailureStorage,
        codec: CodecService,
        *,
        cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
        retention: FailureRetention = "audit",
    ) -> None:
        self.storage = storage
        self.codec = codec
        self.cooldown = cooldown
        self.retention = retention

    async def record_failure(
        self,
        *,
        source_id: int,
        original_timestamp: datetime | None,
        error: str,
        natural_key: str | None,
        payload: Any,
    ) -> FailureEntry:
        entry = await self.storage.upsert_failure(
            source_id=source_id,
            original_timestamp=original_timestamp,
            error=error,
            encrypted_natural_key=self.codec.encrypt(natural_key) if natural_key else None,
            encrypted_payload=self.codec.encrypt_json(payload),
        )
        logger.info("recorded failure source_id=%s attempts=%s", source_id, entry.attempt_count)
        return entry

    async def get_retry_candidates(self, batch_size: int, *, now: datetime | None = None) -> list[FailureEntry]:
        cutoff = (now or datetime.now(timezone.utc)) - self.cooldown
        return await self.storage.fetch_retry_candidates(cutoff, batch_size)

    def decrypt(self, entry: FailureEntry) -> RecoveredEntry:
        return self.codec.decrypt_recovered_entry(entry.encrypted_natural_key, entry.encrypted_payload)

    async def mark_retry_success(self, entry: FailureEntry, natural_key: str | None) -> None:
        if self.retention == "purge":
            await self.storage.delete_failure(entry.id)
            logger.info("retry succeeded, removed failure id=%s source_id=%s", entry.id, entry.source_id)
            return

        hashed = self.codec.hash_natural_key(natural_key) if natural_key else None
        await self.storage.mark_failure_synced(entry.id, hashed)
        logger.info(
            "retry succeeded, failure id=%s marked synced natural_key_hash=%s",
            entry.id,
            hashed[:8] if hashed else None,
        )

    async def mark_retry_failure(self, entry: FailureEntry, error: str) -> None:
        await self.storage.update_failure_after_retry(entry.id, error, False)

    async def outstanding_count(self) -> int:
        return await self.storage.count_failures(synced=False)
