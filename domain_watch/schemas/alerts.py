from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

DeliveryStatusName = Literal["success", "failed", "retrying"]
MatchTypeName = Literal["credential_email", "url", "both"]


class DeliveryRecordOut(BaseModel):
    id: int
    entry_id: int
    target_id: int
    device_id: str | None = None
    upload_batch: str | None = None
    matched_domain: str
    match_type: MatchTypeName
    credential_match_count: int
    url_match_count: int
    payload_sent: str | None = None
    status: DeliveryStatusName
    http_status: int | None = None
    error_message: str | None = None
    retry_count: int
    created_at: datetime
    entry_name: str | None = None
    target_name: str | None = None
    target_url: str | None = None


class DeliveryRecordPage(BaseModel):
    items: list[DeliveryRecordOut] = Field(default_factory=list)
    total: int


class DeliveryStatsOut(BaseModel):
    total: int
    today: int
    success: int
    failed: int


class RegistryCountOut(BaseModel):
    total: int
    active: int


class MonitoringStatsOut(BaseModel):
    watchlist_entries: RegistryCountOut
    callback_targets: RegistryCountOut
    deliveries: DeliveryStatsOut
