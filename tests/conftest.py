from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any

import pytest

from domain_watch.services.records import (
    CallbackTarget,
    CredentialRow,
    DeliveryRecord,
    DeliveryStatus,
    DeviceMetadata,
    MatchMode,
    WatchlistEntry,
)
from domain_watch.services.repository import RepositoryNotFoundError


class FakeWatchRepository:
    """In-memory stand-in for PostgresRepository."""

    def __init__(self) -> None:
        self.entries: dict[int, WatchlistEntry] = {}
        self.targets: dict[int, CallbackTarget] = {}
        self.links: dict[int, list[int]] = {}
        self.credentials: dict[str, list[CredentialRow]] = {}
        self.devices: dict[str, DeviceMetadata] = {}
        self.records: dict[int, DeliveryRecord] = {}
        self.record_created_at: dict[int, datetime] = {}
        self.record_writes: list[tuple[str, DeliveryStatus, int]] = []
        self.corpus_calls: list[tuple[str, str]] = []
        self.touched_targets: list[int] = []
        self.fail_corpus = False
        self.fail_record_writes = False

    def add_entry(
        self,
        entry_id: int,
        domains: list[str],
        *,
        name: str | None = None,
        match_mode: MatchMode = MatchMode.BOTH,
        is_active: bool = True,
    ) -> WatchlistEntry:
        entry = WatchlistEntry(
            id=entry_id,
            name=name or f"watchlist-{entry_id}",
            domains=domains,
            match_mode=match_mode,
            is_active=is_active,
        )
        self.entries[entry_id] = entry
        return entry

    def add_target(
        self,
        target_id: int,
        *,
        entry_ids: list[int],
        url: str | None = None,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        is_active: bool = True,
    ) -> CallbackTarget:
        target = CallbackTarget(
            id=target_id,
            name=f"target-{target_id}",
            url=url or f"https://hooks.example.net/{target_id}",
            secret=secret,
            headers=headers,
            is_active=is_active,
        )
        self.targets[target_id] = target
        for entry_id in entry_ids:
            self.links.setdefault(entry_id, []).append(target_id)
        return target

    def add_credential(
        self,
        device_id: str,
        *,
        login: str = "",
        url: str = "",
        domain: str | None = None,
        password: str = "hunter2",
        browser: str = "Chrome",
    ) -> None:
        self.credentials.setdefault(device_id, []).append(
            CredentialRow(
                url=url,
                login=login,
                password=password,
                browser=browser,
                domain=domain,
                created_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            )
        )

    async def list_active_watchlist_entries(self) -> list[WatchlistEntry]:
        return [entry for entry in self.entries.values() if entry.is_active]

    async def list_active_callback_targets(self, entry_id: int) -> list[CallbackTarget]:
        targets = [self.targets[target_id] for target_id in self.links.get(entry_id, [])]
        return [target for target in targets if target.is_active]

    async def get_callback_target(self, target_id: int) -> CallbackTarget:
        target = self.targets.get(target_id)
        if target is None:
            raise RepositoryNotFoundError("callback target not found")
        return target

    async def fetch_login_rows(self, device_id: str) -> list[CredentialRow]:
        self.corpus_calls.append(("login", device_id))
        if self.fail_corpus:
            raise RuntimeError("credentials table unavailable")
        return [row for row in self.credentials.get(device_id, []) if row.login]

    async def fetch_domain_rows(self, device_id: str) -> list[CredentialRow]:
        self.corpus_calls.append(("domain", device_id))
        if self.fail_corpus:
            raise RuntimeError("credentials table unavailable")
        return [row for row in self.credentials.get(device_id, []) if row.domain]

    async def get_device_metadata(self, device_id: str) -> DeviceMetadata:
        return self.devices.get(device_id, DeviceMetadata(machine_name=device_id))

    async def bump_watchlist_counters(self, entry_id: int, alert_count: int) -> None:
        entry = self.entries[entry_id]
        entry.total_alerts += alert_count
        entry.last_triggered_at = datetime.now(timezone.utc)

    async def insert_delivery_record(self, record: DeliveryRecord) -> int:
        if self.fail_record_writes:
            raise RuntimeError("audit table is read-only")
        record_id = len(self.records) + 1
        self.records[record_id] = dataclasses.replace(record)
        self.record_created_at[record_id] = datetime.now(timezone.utc)
        self.record_writes.append(("insert", record.status, record.retry_count))
        return record_id

    async def update_delivery_record(
        self,
        record_id: int,
        *,
        status: DeliveryStatus,
        http_status: int | None,
        error_message: str | None,
        retry_count: int,
    ) -> None:
        if self.fail_record_writes:
            raise RuntimeError("audit table is read-only")
        record = self.records[record_id]
        record.status = status
        record.http_status = http_status
        record.error_message = error_message
        record.retry_count = retry_count
        self.record_writes.append(("update", status, retry_count))

    async def touch_callback_target(self, target_id: int) -> None:
        self.touched_targets.append(target_id)

    async def list_delivery_records(
        self,
        *,
        entry_id: int | None,
        target_id: int | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = []
        for record_id, record in sorted(self.records.items(), reverse=True):
            if entry_id is not None and record.entry_id != entry_id:
                continue
            if target_id is not None and record.target_id != target_id:
                continue
            if status is not None and record.status.value != status:
                continue
            entry = self.entries.get(record.entry_id)
            target = self.targets.get(record.target_id)
            row = dataclasses.asdict(record)
            row.update(
                id=record_id,
                match_type=record.match_type.value,
                status=record.status.value,
                created_at=self.record_created_at[record_id],
                entry_name=entry.name if entry else None,
                target_name=target.name if target else None,
                target_url=target.url if target else None,
            )
            rows.append(row)
        return rows[offset : offset + limit], len(rows)

    async def get_delivery_stats(self) -> dict[str, int]:
        statuses = [record.status for record in self.records.values()]
        return {
            "total": len(statuses),
            "today": len(statuses),
            "success": statuses.count(DeliveryStatus.SUCCESS),
            "failed": statuses.count(DeliveryStatus.FAILED),
        }

    async def get_registry_counts(self) -> dict[str, dict[str, int]]:
        return {
            "watchlist_entries": {
                "total": len(self.entries),
                "active": sum(1 for entry in self.entries.values() if entry.is_active),
            },
            "callback_targets": {
                "total": len(self.targets),
                "active": sum(1 for target in self.targets.values() if target.is_active),
            },
        }


@pytest.fixture
def watch_repository() -> FakeWatchRepository:
    return FakeWatchRepository()
