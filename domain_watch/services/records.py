from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MatchMode(str, Enum):
    CREDENTIAL = "credential"
    URL = "url"
    BOTH = "both"

    @property
    def uses_credentials(self) -> bool:
        return self in (MatchMode.CREDENTIAL, MatchMode.BOTH)

    @property
    def uses_urls(self) -> bool:
        return self in (MatchMode.URL, MatchMode.BOTH)


class MatchType(str, Enum):
    CREDENTIAL_EMAIL = "credential_email"
    URL = "url"
    BOTH = "both"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass(slots=True)
class WatchlistEntry:
    id: int
    name: str
    domains: list[str]
    match_mode: MatchMode
    is_active: bool = True
    last_triggered_at: datetime | None = None
    total_alerts: int = 0


@dataclass(slots=True)
class CallbackTarget:
    id: int
    name: str
    url: str
    secret: str | None = None
    headers: dict[str, str] | None = None
    is_active: bool = True
    last_triggered_at: datetime | None = None


@dataclass(slots=True)
class CredentialRow:
    url: str
    login: str
    password: str
    browser: str
    domain: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class DeviceMetadata:
    machine_name: str = ""
    ip_address: str = ""
    username: str = ""
    hwid: str = ""
    country: str = ""
    os: str = ""
    log_date: str = ""


@dataclass(slots=True)
class MatchedItem:
    found_at: str
    url: str
    login: str
    password: str
    browser: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.url, self.login)

    def as_payload(self) -> dict[str, str]:
        return {
            "found_at": self.found_at,
            "url": self.url,
            "login": self.login,
            "password": self.password,
            "browser": self.browser,
        }


@dataclass(slots=True)
class WatchlistMatch:
    entry_id: int
    credential_matches: list[MatchedItem] = field(default_factory=list)
    url_matches: list[MatchedItem] = field(default_factory=list)
    matched_domains: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.credential_matches) + len(self.url_matches)

    @property
    def match_type(self) -> MatchType:
        if self.credential_matches and not self.url_matches:
            return MatchType.CREDENTIAL_EMAIL
        if self.url_matches and not self.credential_matches:
            return MatchType.URL
        return MatchType.BOTH


@dataclass(slots=True)
class DeliveryContext:
    entry_id: int
    entry_name: str
    device_id: str
    upload_batch: str
    matched_domain: str
    match_type: MatchType
    credential_match_count: int
    url_match_count: int


@dataclass(slots=True)
class DeliveryRecord:
    entry_id: int
    target_id: int
    device_id: str | None
    upload_batch: str | None
    matched_domain: str
    match_type: MatchType
    credential_match_count: int
    url_match_count: int
    payload_sent: str | None
    status: DeliveryStatus
    http_status: int | None = None
    error_message: str | None = None
    retry_count: int = 0
