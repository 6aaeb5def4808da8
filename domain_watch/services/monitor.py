from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Protocol

from opentelemetry import trace

from domain_watch.core.config import get_settings
from domain_watch.services.background import BackgroundTaskPool, get_task_pool
from domain_watch.services.matching import CredentialCorpus, find_matches
from domain_watch.services.payload import build_payload
from domain_watch.services.records import (
    CallbackTarget,
    DeliveryContext,
    DeviceMetadata,
    WatchlistEntry,
    WatchlistMatch,
)
from domain_watch.services.repository import get_repository
from domain_watch.services.webhooks import DeliveryRecorder, WebhookDispatcher, get_webhook_client

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class MonitorRepository(CredentialCorpus, DeliveryRecorder, Protocol):
    async def list_active_watchlist_entries(self) -> list[WatchlistEntry]: ...

    async def list_active_callback_targets(self, entry_id: int) -> list[CallbackTarget]: ...

    async def get_device_metadata(self, device_id: str) -> DeviceMetadata: ...

    async def bump_watchlist_counters(self, entry_id: int, alert_count: int) -> None: ...


@dataclass(slots=True)
class FanOut:
    entry_id: int
    target_ids: list[int]
    credential_match_count: int
    url_match_count: int


@dataclass(slots=True)
class DeviceCheckResult:
    device_id: str
    entries_checked: int = 0
    fan_outs: list[FanOut] = field(default_factory=list)

    @property
    def targets_notified(self) -> int:
        return sum(len(fan_out.target_ids) for fan_out in self.fan_outs)


class WatchlistMonitor:
    """Entry point the ingestion pipeline calls once per committed device.

    Matching and target selection happen inline; deliveries run on the task
    pool and are never awaited here. Nothing raised inside reaches the caller.
    """

    def __init__(
        self,
        repository: MonitorRepository,
        dispatcher: WebhookDispatcher,
        tasks: BackgroundTaskPool,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.tasks = tasks

    def schedule(self, device_id: str, upload_batch: str) -> None:
        """Run the whole check in the background, for callers that cannot await it."""
        self.tasks.spawn(
            self.on_device_ingested(device_id, upload_batch),
            name=f"watchlist-check:{device_id}",
        )

    async def on_device_ingested(self, device_id: str, upload_batch: str) -> DeviceCheckResult:
        result = DeviceCheckResult(device_id=device_id)
        try:
            with tracer.start_as_current_span("watchlist.check_device") as span:
                span.set_attribute("device.id", device_id)
                span.set_attribute("upload.batch", upload_batch)
                await self._check(device_id, upload_batch, result)
                span.set_attribute("watchlist.targets_notified", result.targets_notified)
        except Exception:
            logger.exception("watchlist check abandoned device_id=%s upload_batch=%s", device_id, upload_batch)
        return result

    async def _check(self, device_id: str, upload_batch: str, result: DeviceCheckResult) -> None:
        entries = await self.repository.list_active_watchlist_entries()
        entries = [entry for entry in entries if self._is_usable(entry)]
        if not entries:
            return

        result.entries_checked = len(entries)
        logger.info("checking %s active watchlist entries device_id=%s", len(entries), device_id)

        matches = await find_matches(self.repository, device_id, entries)
        if not matches:
            return

        device = await self.repository.get_device_metadata(device_id)
        for entry in entries:
            match = matches.get(entry.id)
            if match is None:
                continue
            try:
                fan_out = await self._fan_out(entry, match, device, device_id, upload_batch)
            except Exception:
                logger.exception("failed to process watchlist entry id=%s name=%r", entry.id, entry.name)
                continue
            if fan_out is not None:
                result.fan_outs.append(fan_out)

    async def _fan_out(
        self,
        entry: WatchlistEntry,
        match: WatchlistMatch,
        device: DeviceMetadata,
        device_id: str,
        upload_batch: str,
    ) -> FanOut | None:
        logger.info(
            "watchlist %r matched %s credentials device_id=%s domains=%s",
            entry.name,
            match.total,
            device_id,
            ",".join(match.matched_domains),
        )

        targets = [target for target in await self.repository.list_active_callback_targets(entry.id) if target.is_active]
        if not targets:
            logger.warning("watchlist %r (id=%s) has no active callback targets configured", entry.name, entry.id)
            return None

        payload = build_payload(entry, match, device, upload_batch)
        context = DeliveryContext(
            entry_id=entry.id,
            entry_name=entry.name,
            device_id=device_id,
            upload_batch=upload_batch,
            matched_domain=", ".join(match.matched_domains),
            match_type=match.match_type,
            credential_match_count=len(match.credential_matches),
            url_match_count=len(match.url_matches),
        )
        dispatched: list[int] = []
        for target in targets:
            task = self.tasks.spawn(
                self.dispatcher.dispatch(target, payload, context),
                name=f"webhook:{entry.id}:{target.id}:{device_id}",
            )
            if task is None:
                logger.warning(
                    "delivery not scheduled target=%r entry_id=%s device_id=%s; pool is shutting down",
                    target.name,
                    entry.id,
                    device_id,
                )
                continue
            dispatched.append(target.id)
        if not dispatched:
            return None

        # Counts scheduled deliveries, whatever their eventual outcome.
        try:
            await self.repository.bump_watchlist_counters(entry.id, len(dispatched))
        except Exception:
            logger.exception("failed to bump counters for watchlist entry id=%s", entry.id)

        return FanOut(
            entry_id=entry.id,
            target_ids=dispatched,
            credential_match_count=context.credential_match_count,
            url_match_count=context.url_match_count,
        )

    @staticmethod
    def _is_usable(entry: WatchlistEntry) -> bool:
        if not entry.is_active:
            return False
        if not entry.domains:
            logger.warning("watchlist %r (id=%s) has no valid domains; skipping", entry.name, entry.id)
            return False
        return True


@lru_cache
def get_monitor() -> WatchlistMonitor:
    repository = get_repository()
    return WatchlistMonitor(
        repository=repository,
        dispatcher=WebhookDispatcher.from_settings(repository, get_settings(), client=get_webhook_client()),
        tasks=get_task_pool(),
    )
