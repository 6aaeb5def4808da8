from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from domain_watch.core.config import Settings
from domain_watch.services.payload import build_test_payload, serialize_payload
from domain_watch.services.records import (
    CallbackTarget,
    DeliveryContext,
    DeliveryRecord,
    DeliveryStatus,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_HEADER = "X-Webhook-Test"


class DeliveryRecorder(Protocol):
    async def insert_delivery_record(self, record: DeliveryRecord) -> int: ...

    async def update_delivery_record(
        self,
        record_id: int,
        *,
        status: DeliveryStatus,
        http_status: int | None,
        error_message: str | None,
        retry_count: int,
    ) -> None: ...

    async def touch_callback_target(self, target_id: int) -> None: ...


@dataclass(slots=True)
class AttemptResult:
    http_status: int | None
    error_message: str | None
    retryable: bool

    @property
    def ok(self) -> bool:
        return self.http_status is not None and 200 <= self.http_status < 300


@dataclass(slots=True)
class DeliveryOutcome:
    target_id: int
    status: DeliveryStatus
    http_status: int | None
    error_message: str | None
    retry_count: int
    record_id: int | None


@dataclass(slots=True)
class WebhookTestResult:
    success: bool
    status_code: int | None = None
    error: str | None = None


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_headers(
    target: CallbackTarget,
    body: bytes,
    *,
    user_agent: str,
    extra: dict[str, str] | None = None,
) -> httpx.Headers:
    headers = httpx.Headers({"Content-Type": "application/json", "User-Agent": user_agent})
    if extra:
        headers.update(extra)
    if target.headers:
        headers.update(target.headers)
    if target.secret:
        headers[SIGNATURE_HEADER] = sign_body(body, target.secret)
    return headers


class WebhookDispatcher:
    """Delivers one payload to one callback target with bounded retries.

    Each call owns its retry loop: 5xx responses, transport errors and
    timeouts are retried up to ``max_retries`` times with ``base * 2**n``
    second pauses, any other non-2xx answer is terminal. One audit row is
    written on the first attempt and updated in place afterwards, so the
    stored row always carries the latest status and retry count.
    """

    def __init__(
        self,
        recorder: DeliveryRecorder,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        test_timeout_seconds: float = 15.0,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        user_agent: str = "DomainWatch-Webhooks/1.0",
        error_body_limit: int = 200,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.recorder = recorder
        self.timeout_seconds = timeout_seconds
        self.test_timeout_seconds = test_timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.user_agent = user_agent
        self.error_body_limit = max(0, error_body_limit)
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, recorder: DeliveryRecorder, settings: Settings, **kwargs: Any) -> "WebhookDispatcher":
        return cls(
            recorder,
            timeout_seconds=settings.webhook_timeout_seconds,
            test_timeout_seconds=settings.webhook_test_timeout_seconds,
            max_retries=settings.webhook_max_retries,
            retry_base_seconds=settings.webhook_retry_base_seconds,
            user_agent=settings.webhook_user_agent,
            error_body_limit=settings.webhook_error_body_limit,
            **kwargs,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_webhook_client()

    def backoff_delay(self, retry_count: int) -> float:
        return self.retry_base_seconds * (2**retry_count)

    async def dispatch(
        self,
        target: CallbackTarget,
        payload: dict[str, Any],
        context: DeliveryContext,
    ) -> DeliveryOutcome:
        body = serialize_payload(payload)
        headers = build_headers(target, body, user_agent=self.user_agent)
        payload_sent = body.decode("utf-8")
        record_id: int | None = None
        retry_count = 0

        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("watchlist.entry_id", context.entry_id)
            span.set_attribute("webhook.target_id", target.id)
            span.set_attribute("device.id", context.device_id)

            while True:
                with tracer.start_as_current_span("webhook.attempt") as attempt_span:
                    attempt_span.set_attribute("webhook.attempt", retry_count + 1)
                    result = await self._post(target.url, body, headers, self.timeout_seconds)
                    if result.http_status is not None:
                        attempt_span.set_attribute("http.status_code", result.http_status)

                will_retry = not result.ok and result.retryable and retry_count < self.max_retries
                if result.ok:
                    status = DeliveryStatus.SUCCESS
                elif will_retry:
                    status = DeliveryStatus.RETRYING
                else:
                    status = DeliveryStatus.FAILED

                record_id = await self._record(
                    record_id,
                    target=target,
                    context=context,
                    payload_sent=payload_sent,
                    status=status,
                    result=result,
                    retry_count=retry_count,
                )

                if result.ok:
                    await self._touch_target(target)
                    logger.info(
                        "webhook delivered target=%r entry_id=%s device_id=%s status=%s retries=%s",
                        target.name,
                        context.entry_id,
                        context.device_id,
                        result.http_status,
                        retry_count,
                    )
                    break

                if not will_retry:
                    logger.error(
                        "webhook failed target=%r entry_id=%s device_id=%s retries=%s error=%s",
                        target.name,
                        context.entry_id,
                        context.device_id,
                        retry_count,
                        result.error_message,
                    )
                    break

                delay = self.backoff_delay(retry_count)
                logger.warning(
                    "retrying webhook target=%r in %.1fs (attempt %s/%s): %s",
                    target.name,
                    delay,
                    retry_count + 1,
                    self.max_retries,
                    result.error_message,
                )
                await self._sleep(delay)
                retry_count += 1

            span.set_attribute("webhook.status", status.value)
            span.set_attribute("webhook.retry_count", retry_count)

        return DeliveryOutcome(
            target_id=target.id,
            status=status,
            http_status=result.http_status,
            error_message=result.error_message,
            retry_count=retry_count,
            record_id=record_id,
        )

    async def send_test(self, target: CallbackTarget, payload: dict[str, Any] | None = None) -> WebhookTestResult:
        """Single signed attempt with a sample payload; nothing is persisted."""
        body = serialize_payload(payload if payload is not None else build_test_payload())
        headers = build_headers(target, body, user_agent=self.user_agent, extra={TEST_HEADER: "true"})
        with tracer.start_as_current_span("webhook.test") as span:
            span.set_attribute("webhook.target_id", target.id)
            result = await self._post(target.url, body, headers, self.test_timeout_seconds)
        return WebhookTestResult(
            success=result.ok,
            status_code=result.http_status,
            error=None if result.ok else result.error_message,
        )

    async def _post(self, url: str, body: bytes, headers: httpx.Headers, timeout: float) -> AttemptResult:
        client = self.client
        try:
            response = await asyncio.wait_for(
                client.post(url, content=body, headers=headers, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return AttemptResult(
                http_status=None,
                error_message=f"request timed out after {timeout:g}s",
                retryable=True,
            )
        except httpx.InvalidURL as exc:
            return AttemptResult(http_status=None, error_message=f"invalid url: {exc}", retryable=False)
        except httpx.HTTPError as exc:
            return AttemptResult(
                http_status=None,
                error_message=str(exc) or exc.__class__.__name__,
                retryable=True,
            )

        status_code = int(response.status_code)
        if 200 <= status_code < 300:
            return AttemptResult(http_status=status_code, error_message=None, retryable=False)

        excerpt = response.text[: self.error_body_limit]
        return AttemptResult(
            http_status=status_code,
            error_message=f"HTTP {status_code}: {excerpt}",
            retryable=status_code >= 500,
        )

    async def _record(
        self,
        record_id: int | None,
        *,
        target: CallbackTarget,
        context: DeliveryContext,
        payload_sent: str,
        status: DeliveryStatus,
        result: AttemptResult,
        retry_count: int,
    ) -> int | None:
        try:
            if record_id is None:
                return await self.recorder.insert_delivery_record(
                    DeliveryRecord(
                        entry_id=context.entry_id,
                        target_id=target.id,
                        device_id=context.device_id,
                        upload_batch=context.upload_batch,
                        matched_domain=context.matched_domain,
                        match_type=context.match_type,
                        credential_match_count=context.credential_match_count,
                        url_match_count=context.url_match_count,
                        payload_sent=payload_sent,
                        status=status,
                        http_status=result.http_status,
                        error_message=result.error_message,
                        retry_count=retry_count,
                    )
                )
            await self.recorder.update_delivery_record(
                record_id,
                status=status,
                http_status=result.http_status,
                error_message=result.error_message,
                retry_count=retry_count,
            )
        except Exception:
            # Audit failures never trigger another delivery attempt.
            logger.exception(
                "failed to persist delivery record target_id=%s entry_id=%s status=%s",
                target.id,
                context.entry_id,
                status.value,
            )
        return record_id

    async def _touch_target(self, target: CallbackTarget) -> None:
        try:
            await self.recorder.touch_callback_target(target.id)
        except Exception:
            logger.exception("failed to update last_triggered_at target_id=%s", target.id)


@lru_cache
def get_webhook_client() -> httpx.AsyncClient:
    """Connection pool shared by every delivery; closed by the app lifespan."""
    return httpx.AsyncClient(follow_redirects=False)
