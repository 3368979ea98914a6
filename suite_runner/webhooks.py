"""Webhook notifications for finished runs.

Deliveries are signed with HMAC-SHA256 over the raw JSON body and retried with a
fixed delay. ``notify`` only schedules delivery tasks, so callers are never held
up by slow or unreachable subscribers.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import json
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID, uuid4

import httpx

from suite_runner.comparison import ComparisonResult, compare_runs
from suite_runner.errors import DeliveryError
from suite_runner.logging import get_logger
from suite_runner.models import RunStatus, TestRun, TestSuite, Webhook, WebhookEvent, WebhookStatus

logger = get_logger(__name__)

USER_AGENT = "suite-runner-webhook/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"
MAX_CONSECUTIVE_FAILURES = 10

# most specific first
EVENT_PRIORITY = [
    WebhookEvent.regression_detected,
    WebhookEvent.run_failed,
    WebhookEvent.run_completed,
]

Sleep = Callable[[float], Awaitable[None]]
DeliveryHook = Callable[[Webhook, "DeliveryResult"], Awaitable[None]]


@dataclass
class DeliveryResult:
    success: bool
    attempts: int
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    duration_ms: int = 0


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature)


def is_allowed_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False
    host = parts.hostname.lower()
    if host == "localhost" or host.endswith((".local", ".internal")):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    )


def events_to_trigger(run: TestRun, comparison: ComparisonResult | None) -> set[WebhookEvent]:
    events: set[WebhookEvent] = set()
    if run.status == RunStatus.completed:
        events.add(WebhookEvent.run_completed)
    if run.status == RunStatus.failed or run.summary.failed > 0:
        events.add(WebhookEvent.run_failed)
    if comparison is not None and comparison.has_regressions:
        events.add(WebhookEvent.regression_detected)
    return events


def select_event(
    webhook: Webhook,
    triggered: set[WebhookEvent],
    suite_id: UUID | None,
    has_failed: bool,
    has_regressions: bool,
) -> WebhookEvent | None:
    if webhook.status != WebhookStatus.active:
        return None
    if webhook.suite_ids and suite_id not in webhook.suite_ids:
        return None
    if webhook.only_on_failure and not has_failed:
        return None
    if webhook.only_on_regression and not has_regressions:
        return None
    for event in EVENT_PRIORITY:
        if event in triggered and event in webhook.events:
            return event
    return None


def build_payload(
    event: WebhookEvent,
    run: TestRun,
    suite: TestSuite,
    comparison: ComparisonResult | None,
) -> dict[str, Any]:
    return {
        "event": str(event),
        "timestamp": datetime.now(UTC).isoformat(),
        "suite": {"id": str(suite.id), "name": suite.name},
        "testRun": {
            "id": str(run.id),
            "suiteId": str(suite.id),
            "suiteName": suite.name,
            "status": str(run.status),
            "summary": run.summary.to_wire(),
            "regressions": comparison.summary.regressed if comparison else 0,
            "improvements": comparison.summary.improved if comparison else 0,
        },
    }


def record_outcome(webhook: Webhook, result: DeliveryResult) -> None:
    now = datetime.now(UTC)
    webhook.last_delivery = now
    if result.success:
        webhook.last_success = now
        webhook.consecutive_failures = 0
        return
    webhook.last_failure = now
    webhook.consecutive_failures += 1
    if webhook.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
        logger.warning(f"Webhook {webhook.id} disabled after {webhook.consecutive_failures} consecutive failures")
        webhook.status = WebhookStatus.failed


class WebhookDispatcher:
    def __init__(
        self,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        on_delivery: DeliveryHook | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.transport = transport
        self.sleep = sleep
        self.on_delivery = on_delivery
        self._pending: set[asyncio.Task] = set()

    async def _attempt(
        self, client: httpx.AsyncClient, webhook: Webhook, body: bytes, headers: dict[str, str]
    ) -> httpx.Response:
        try:
            return await client.post(webhook.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

    async def deliver(self, webhook: Webhook, payload: dict[str, Any], event: WebhookEvent) -> DeliveryResult:
        if not is_allowed_url(webhook.url):
            return DeliveryResult(
                success=False,
                attempts=0,
                error="Webhook URL is not allowed (internal or private address)",
            )

        body = json.dumps(payload, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": str(event),
            "X-Webhook-Delivery": str(uuid4()),
            "X-Webhook-Timestamp": datetime.now(UTC).isoformat(),
            SIGNATURE_HEADER: sign_payload(body, webhook.secret),
            **webhook.headers,
        }

        start = time.monotonic()
        max_attempts = webhook.retry_count + 1
        failure = DeliveryResult(success=False, attempts=0)
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
            for attempt in range(1, max_attempts + 1):
                if attempt > 1:
                    await self.sleep(webhook.retry_delay_ms / 1000)
                failure.attempts = attempt
                try:
                    response = await self._attempt(client, webhook, body, headers)
                except DeliveryError as e:
                    failure.status_code, failure.response, failure.error = None, None, str(e)
                else:
                    if response.is_success:
                        return DeliveryResult(
                            success=True,
                            attempts=attempt,
                            status_code=response.status_code,
                            response=response.text[:1000],
                            duration_ms=int((time.monotonic() - start) * 1000),
                        )
                    failure.status_code = response.status_code
                    failure.response = response.text[:1000]
                    failure.error = f"HTTP {response.status_code}: {response.reason_phrase}"
                logger.warning(f"Webhook {webhook.id} attempt {attempt}/{max_attempts} failed: {failure.error}")

        failure.duration_ms = int((time.monotonic() - start) * 1000)
        return failure

    async def _deliver_and_record(self, webhook: Webhook, payload: dict[str, Any], event: WebhookEvent) -> DeliveryResult:
        result = await self.deliver(webhook, payload, event)
        record_outcome(webhook, result)
        if result.success:
            logger.info(f"Webhook {webhook.id} delivered '{event}' in {result.attempts} attempt(s)")
        else:
            logger.error(f"Webhook {webhook.id} delivery of '{event}' failed: {result.error}")
        if self.on_delivery is not None:
            try:
                await self.on_delivery(webhook, result)
            except Exception:
                logger.exception(f"Recording delivery for webhook {webhook.id} failed")
        return result

    def notify(
        self,
        run: TestRun,
        suite: TestSuite,
        webhooks: Iterable[Webhook],
        previous_run: TestRun | None = None,
    ) -> list[asyncio.Task]:
        comparison = compare_runs(previous_run, run) if previous_run is not None else None
        triggered = events_to_trigger(run, comparison)
        has_failed = WebhookEvent.run_failed in triggered
        has_regressions = WebhookEvent.regression_detected in triggered

        tasks = []
        for webhook in webhooks:
            event = select_event(webhook, triggered, suite.id, has_failed, has_regressions)
            if event is None:
                continue
            payload = build_payload(event, run, suite, comparison)
            task = asyncio.create_task(self._deliver_and_record(webhook, payload, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            tasks.append(task)
        logger.info(f"Run {run.id}: {len(tasks)} webhook deliveries scheduled")
        return tasks

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)
