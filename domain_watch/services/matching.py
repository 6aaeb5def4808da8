"""In-memory watchlist matching over one device's credential corpus.

Matching never issues per-domain queries: at most two bulk reads are made for
a device (rows with a login, rows with a resolved domain) and every watched
domain is tested against them in memory.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from domain_watch.core.domains import email_domain, matches_domain, normalize_domain
from domain_watch.services.records import CredentialRow, MatchedItem, WatchlistEntry, WatchlistMatch

logger = logging.getLogger(__name__)


class CredentialCorpus(Protocol):
    async def fetch_login_rows(self, device_id: str) -> list[CredentialRow]: ...

    async def fetch_domain_rows(self, device_id: str) -> list[CredentialRow]: ...


@dataclass(slots=True)
class _UrlHit:
    item: MatchedItem
    # Same (url, login) already matched through the login's email domain.
    seen_as_credential: bool


@dataclass(slots=True)
class DomainBuckets:
    credential: dict[str, list[MatchedItem]] = field(default_factory=dict)
    url: dict[str, list[_UrlHit]] = field(default_factory=dict)


def required_domains(entries: list[WatchlistEntry]) -> tuple[set[str], set[str]]:
    credential_domains: set[str] = set()
    url_domains: set[str] = set()
    for entry in entries:
        if entry.match_mode.uses_credentials:
            credential_domains.update(entry.domains)
        if entry.match_mode.uses_urls:
            url_domains.update(entry.domains)
    return credential_domains, url_domains


def bucket_matches(
    *,
    login_rows: list[CredentialRow],
    domain_rows: list[CredentialRow],
    credential_domains: set[str],
    url_domains: set[str],
    now: datetime | None = None,
) -> DomainBuckets:
    current = now or datetime.now(timezone.utc)
    buckets = DomainBuckets()
    credential_keys: dict[str, set[tuple[str, str]]] = {}

    for row in login_rows:
        row_domain = email_domain(row.login)
        if row_domain is None:
            continue
        for watched in credential_domains:
            if not matches_domain(row_domain, watched):
                continue
            item = _to_item(row, current)
            buckets.credential.setdefault(watched, []).append(item)
            credential_keys.setdefault(watched, set()).add(item.key)

    for row in domain_rows:
        row_domain = normalize_domain(row.domain)
        if row_domain is None:
            continue
        for watched in url_domains:
            if not matches_domain(row_domain, watched):
                continue
            item = _to_item(row, current)
            duplicate = item.key in credential_keys.get(watched, ())
            buckets.url.setdefault(watched, []).append(_UrlHit(item=item, seen_as_credential=duplicate))

    return buckets


def combine_for_entry(entry: WatchlistEntry, buckets: DomainBuckets) -> WatchlistMatch | None:
    """Union an entry's per-domain buckets; None when nothing matched."""
    result = WatchlistMatch(entry_id=entry.id)
    seen: set[tuple[str, str]] = set()
    use_credentials = entry.match_mode.uses_credentials

    for domain in entry.domains:
        hit = False
        if use_credentials:
            for item in buckets.credential.get(domain, ()):
                hit = True
                if item.key in seen:
                    continue
                seen.add(item.key)
                result.credential_matches.append(item)
        if entry.match_mode.uses_urls:
            for url_hit in buckets.url.get(domain, ()):
                if use_credentials and url_hit.seen_as_credential:
                    continue
                hit = True
                if url_hit.item.key in seen:
                    continue
                seen.add(url_hit.item.key)
                result.url_matches.append(url_hit.item)
        if hit:
            result.matched_domains.append(domain)

    if result.total == 0:
        return None
    return result


def match_entries(
    entries: list[WatchlistEntry],
    *,
    login_rows: list[CredentialRow],
    domain_rows: list[CredentialRow],
    now: datetime | None = None,
) -> dict[int, WatchlistMatch]:
    credential_domains, url_domains = required_domains(entries)
    buckets = bucket_matches(
        login_rows=login_rows,
        domain_rows=domain_rows,
        credential_domains=credential_domains,
        url_domains=url_domains,
        now=now,
    )
    matches: dict[int, WatchlistMatch] = {}
    for entry in entries:
        combined = combine_for_entry(entry, buckets)
        if combined is not None:
            matches[entry.id] = combined
    return matches


async def find_matches(
    corpus: CredentialCorpus,
    device_id: str,
    entries: list[WatchlistEntry],
    *,
    now: datetime | None = None,
) -> dict[int, WatchlistMatch]:
    credential_domains, url_domains = required_domains(entries)
    login_rows = await corpus.fetch_login_rows(device_id) if credential_domains else []
    domain_rows = await corpus.fetch_domain_rows(device_id) if url_domains else []
    logger.debug(
        "corpus loaded device_id=%s login_rows=%s domain_rows=%s",
        device_id,
        len(login_rows),
        len(domain_rows),
    )
    return match_entries(entries, login_rows=login_rows, domain_rows=domain_rows, now=now)


def _to_item(row: CredentialRow, current: datetime) -> MatchedItem:
    return MatchedItem(
        found_at=isoformat_utc(row.created_at or current),
        url=row.url,
        login=row.login,
        password=row.password,
        browser=row.browser,
    )


def isoformat_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
