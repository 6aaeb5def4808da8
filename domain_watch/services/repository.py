from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from domain_watch.core.config import get_settings
from domain_watch.core.domains import normalize_domains
from domain_watch.services.records import (
    CallbackTarget,
    CredentialRow,
    DeliveryRecord,
    DeliveryStatus,
    DeviceMetadata,
    MatchMode,
    WatchlistEntry,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryValidationError(RepositoryError):
    """Raised when filter or payload validation fails before hitting the database."""


DELIVERY_STATUSES = {status.value for status in DeliveryStatus}


class PostgresRepository:
    """Registry reads, credential corpus reads and the delivery audit log.

    The engine only ever reads watchlist entries and callback targets; the
    only registry writes are the advisory counters on an entry and the
    ``last_triggered_at`` timestamp on a target.
    """

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Registry reads

    async def list_active_watchlist_entries(self) -> list[WatchlistEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, name, domains, match_mode, is_active, last_triggered_at, total_alerts
            from watchlist_entries
            where is_active = true
            order by id
            """
        )
        entries: list[WatchlistEntry] = []
        for row in rows:
            entry = self._watchlist_row_to_entry(row)
            if entry is not None:
                entries.append(entry)
        return entries

    async def list_active_callback_targets(self, entry_id: int) -> list[CallbackTarget]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select ct.id, ct.name, ct.url, ct.secret, ct.headers, ct.is_active, ct.last_triggered_at
            from callback_targets ct
            join watchlist_callback_targets wct on wct.target_id = ct.id
            where wct.entry_id = $1
              and ct.is_active = true
            order by ct.id
            """,
            entry_id,
        )
        return [self._target_row_to_target(row) for row in rows]

    async def get_callback_target(self, target_id: int) -> CallbackTarget:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, name, url, secret, headers, is_active, last_triggered_at
            from callback_targets
            where id = $1
            """,
            target_id,
        )
        if row is None:
            raise RepositoryNotFoundError("callback target not found")
        return self._target_row_to_target(row)

    async def get_registry_counts(self) -> dict[str, dict[str, int]]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              (select count(*) from watchlist_entries) as entries_total,
              (select count(*) from watchlist_entries where is_active = true) as entries_active,
              (select count(*) from callback_targets) as targets_total,
              (select count(*) from callback_targets where is_active = true) as targets_active
            """
        )
        return {
            "watchlist_entries": {
                "total": int(row["entries_total"] or 0),
                "active": int(row["entries_active"] or 0),
            },
            "callback_targets": {
                "total": int(row["targets_total"] or 0),
                "active": int(row["targets_active"] or 0),
            },
        }

    # Credential corpus

    async def fetch_login_rows(self, device_id: str) -> list[CredentialRow]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select url, username, password, browser, domain, created_at
            from credentials
            where device_id = $1
              and username is not null
              and username <> ''
            """,
            device_id,
        )
        return [self._credential_row(row) for row in rows]

    async def fetch_domain_rows(self, device_id: str) -> list[CredentialRow]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select url, username, password, browser, domain, created_at
            from credentials
            where device_id = $1
              and domain is not null
              and domain <> ''
            """,
            device_id,
        )
        return [self._credential_row(row) for row in rows]

    async def get_device_metadata(self, device_id: str) -> DeviceMetadata:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              d.device_name,
              si.computer_name,
              si.ip_address,
              si.username,
              si.hwid,
              si.country,
              si.os,
              si.log_date
            from (select $1::text as device_id) requested
            left join devices d on d.device_id = requested.device_id
            left join systeminformation si on si.device_id = requested.device_id
            """,
            device_id,
        )
        if row is None:
            return DeviceMetadata(machine_name=device_id)
        return DeviceMetadata(
            machine_name=self._coerce_text(row["computer_name"]) or self._coerce_text(row["device_name"]) or device_id,
            ip_address=self._coerce_text(row["ip_address"]) or "",
            username=self._coerce_text(row["username"]) or "",
            hwid=self._coerce_text(row["hwid"]) or "",
            country=self._coerce_text(row["country"]) or "",
            os=self._coerce_text(row["os"]) or "",
            log_date=self._coerce_text(row["log_date"]) or "",
        )

    # Delivery audit log

    async def insert_delivery_record(self, record: DeliveryRecord) -> int:
        pool = await self._get_pool()
        record_id = await pool.fetchval(
            """
            insert into delivery_records (
              entry_id,
              target_id,
              device_id,
              upload_batch,
              matched_domain,
              match_type,
              credential_match_count,
              url_match_count,
              payload_sent,
              status,
              http_status,
              error_message,
              retry_count
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            returning id
            """,
            record.entry_id,
            record.target_id,
            record.device_id,
            record.upload_batch,
            record.matched_domain,
            record.match_type.value,
            record.credential_match_count,
            record.url_match_count,
            record.payload_sent,
            record.status.value,
            record.http_status,
            record.error_message,
            record.retry_count,
        )
        return int(record_id)

    async def update_delivery_record(
        self,
        record_id: int,
        *,
        status: DeliveryStatus,
        http_status: int | None,
        error_message: str | None,
        retry_count: int,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update delivery_records
            set status = $2,
                http_status = $3,
                error_message = $4,
                retry_count = $5,
                updated_at = now()
            where id = $1
            """,
            record_id,
            status.value,
            http_status,
            error_message,
            retry_count,
        )

    async def touch_callback_target(self, target_id: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update callback_targets set last_triggered_at = now() where id = $1",
            target_id,
        )

    async def bump_watchlist_counters(self, entry_id: int, alert_count: int) -> None:
        # Not serialized across concurrent invocations; the counters are advisory.
        pool = await self._get_pool()
        await pool.execute(
            """
            update watchlist_entries
            set last_triggered_at = now(),
                total_alerts = total_alerts + $2
            where id = $1
            """,
            entry_id,
            alert_count,
        )

    async def list_delivery_records(
        self,
        *,
        entry_id: int | None,
        target_id: int | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in DELIVERY_STATUSES:
            raise RepositoryValidationError("status must be one of: success, failed, retrying")

        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)
            from delivery_records dr
            where ($1::bigint is null or dr.entry_id = $1)
              and ($2::bigint is null or dr.target_id = $2)
              and ($3::text is null or dr.status = $3)
            """,
            entry_id,
            target_id,
            normalized_status,
        )
        rows = await pool.fetch(
            """
            select
              dr.id,
              dr.entry_id,
              dr.target_id,
              dr.device_id,
              dr.upload_batch,
              dr.matched_domain,
              dr.match_type,
              dr.credential_match_count,
              dr.url_match_count,
              dr.payload_sent,
              dr.status,
              dr.http_status,
              dr.error_message,
              dr.retry_count,
              dr.created_at,
              we.name as entry_name,
              ct.name as target_name,
              ct.url as target_url
            from delivery_records dr
            left join watchlist_entries we on we.id = dr.entry_id
            left join callback_targets ct on ct.id = dr.target_id
            where ($1::bigint is null or dr.entry_id = $1)
              and ($2::bigint is null or dr.target_id = $2)
              and ($3::text is null or dr.status = $3)
            order by dr.created_at desc, dr.id desc
            limit $4
            offset $5
            """,
            entry_id,
            target_id,
            normalized_status,
            limit,
            offset,
        )
        return [self._delivery_row_to_dict(row) for row in rows], int(total or 0)

    async def get_delivery_stats(self) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as total,
              count(*) filter (where created_at::date = current_date) as today,
              count(*) filter (where status = 'success') as success,
              count(*) filter (where status = 'failed') as failed
            from delivery_records
            """
        )
        return {
            "total": int(row["total"] or 0),
            "today": int(row["today"] or 0),
            "success": int(row["success"] or 0),
            "failed": int(row["failed"] or 0),
        }

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _watchlist_row_to_entry(self, row: asyncpg.Record) -> WatchlistEntry | None:
        try:
            match_mode = MatchMode(row["match_mode"])
        except ValueError:
            logger.warning("watchlist entry id=%s has unknown match_mode=%r; skipping", row["id"], row["match_mode"])
            return None

        return WatchlistEntry(
            id=int(row["id"]),
            name=row["name"],
            domains=normalize_domains(self._coerce_json_list(row["domains"])),
            match_mode=match_mode,
            is_active=bool(row["is_active"]),
            last_triggered_at=row["last_triggered_at"],
            total_alerts=int(row["total_alerts"] or 0),
        )

    def _target_row_to_target(self, row: asyncpg.Record) -> CallbackTarget:
        headers = self._coerce_json_dict(row["headers"])
        return CallbackTarget(
            id=int(row["id"]),
            name=row["name"],
            url=row["url"],
            secret=self._coerce_text(row["secret"]),
            headers={str(key): str(value) for key, value in headers.items()} if headers else None,
            is_active=bool(row["is_active"]),
            last_triggered_at=row["last_triggered_at"],
        )

    @staticmethod
    def _credential_row(row: asyncpg.Record) -> CredentialRow:
        return CredentialRow(
            url=row["url"] or "",
            login=row["username"] or "",
            password=row["password"] or "",
            browser=row["browser"] or "",
            domain=row["domain"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _delivery_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": int(row["id"]),
            "entry_id": int(row["entry_id"]),
            "target_id": int(row["target_id"]),
            "device_id": row["device_id"],
            "upload_batch": row["upload_batch"],
            "matched_domain": row["matched_domain"],
            "match_type": row["match_type"],
            "credential_match_count": int(row["credential_match_count"] or 0),
            "url_match_count": int(row["url_match_count"] or 0),
            "payload_sent": row["payload_sent"],
            "status": row["status"],
            "http_status": row["http_status"],
            "error_message": row["error_message"],
            "retry_count": int(row["retry_count"] or 0),
            "created_at": row["created_at"],
            "entry_name": row["entry_name"],
            "target_name": row["target_name"],
            "target_url": row["target_url"],
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        if isinstance(value, datetime):
            return value.date().isoformat()
        return str(value)

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if isinstance(value, list):
            return value
        return []

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
