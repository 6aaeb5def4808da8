from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from domain_watch.services.matching import isoformat_utc
from domain_watch.services.records import DeviceMetadata, MatchedItem, WatchlistEntry, WatchlistMatch


def build_payload(
    entry: WatchlistEntry,
    match: WatchlistMatch,
    device: DeviceMetadata,
    upload_batch: str,
) -> dict[str, Any]:
    return _assemble(
        entry_name=entry.name,
        matched_domains=match.matched_domains,
        device=device,
        credential_matches=match.credential_matches,
        url_matches=match.url_matches,
        upload_batch=upload_batch,
    )


def build_test_payload(*, now: datetime | None = None) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    found_at = isoformat_utc(current)
    return _assemble(
        entry_name="[TEST] Sample Watchlist",
        matched_domains=["example.com"],
        device=DeviceMetadata(
            machine_name="TEST-MACHINE",
            ip_address="192.168.1.1",
            username="testuser",
            hwid="HWID-TEST-1234567890",
            country="US",
            os="Windows 10 Pro",
            log_date=current.date().isoformat(),
        ),
        credential_matches=[
            MatchedItem(
                found_at=found_at,
                url="https://login.example.com/auth",
                login="user@example.com",
                password="test_password_123",
                browser="Chrome",
            )
        ],
        url_matches=[
            MatchedItem(
                found_at=found_at,
                url="https://api.example.com/v1/auth",
                login="admin@gmail.com",
                password="another_password",
                browser="Firefox",
            )
        ],
        upload_batch=f"TEST_BATCH_{int(current.timestamp() * 1000)}",
    )


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Canonical wire form; the signature is computed over exactly these bytes."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _assemble(
    *,
    entry_name: str,
    matched_domains: list[str],
    device: DeviceMetadata,
    credential_matches: list[MatchedItem],
    url_matches: list[MatchedItem],
    upload_batch: str,
) -> dict[str, Any]:
    return {
        "monitor_name": entry_name,
        "matched_domain": ", ".join(matched_domains),
        "device": {
            "target_machine_name": device.machine_name or "",
            "target_ip": device.ip_address or "",
            "username": device.username or "",
            "hwid": device.hwid or "",
            "country": device.country or "",
            "os": device.os or "",
            "log_date": device.log_date or "",
        },
        "credential_matches": [item.as_payload() for item in credential_matches],
        "url_matches": [item.as_payload() for item in url_matches],
        "summary": {
            "total_credential_matches": len(credential_matches),
            "total_url_matches": len(url_matches),
            "upload_batch": upload_batch,
        },
    }
