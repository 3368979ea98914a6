import asyncio
from collections.abc import AsyncIterator
from typing import Annotated

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from api.database import (
    DB_PATH,
    fetch_active_webhooks,
    fetch_previous_completed_run,
    fetch_run_by_id,
    fetch_runs_for_suite,
    fetch_suite_by_id,
    fetch_webhook_by_id,
    get_db,
    insert_suite,
    record_webhook_delivery,
    save_run,
    save_webhook,
    update_run_note,
)
from api.schemas import NoteUpdate, RunRequest, RunSummaryResponse, SuiteCreatedResponse
from suite_runner.comparison import ComparisonResult, compare_runs
from suite_runner.config import settings
from suite_runner.events import ErrorPayload, Event, EventChannel, EventType
from suite_runner.llm import default_providers
from suite_runner.logging import get_logger
from suite_runner.models import TestRun, TestSuite, Webhook
from suite_runner.orchestrator import RunOptions, RunOrchestrator
from suite_runner.webhooks import DeliveryResult, WebhookDispatcher

logger = get_logger(__name__)

router = APIRouter()

Db = Annotated[aiosqlite.Connection, Depends(get_db)]

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# keeps references to runs that outlive their stream
_background: set[asyncio.Task] = set()


async def _record_delivery(webhook: Webhook, result: DeliveryResult) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await record_webhook_delivery(db, str(webhook.id), result)


async def _persist_run(run: TestRun) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await save_run(db, run)


def build_orchestrator() -> RunOrchestrator:
    dispatcher = WebhookDispatcher(timeout_s=settings.webhook_timeout_s, on_delivery=_record_delivery)
    return RunOrchestrator(
        default_providers(),
        dispatcher=dispatcher,
        heartbeat_interval_s=settings.heartbeat_interval_s,
    )


async def _execute_run(
    suite: TestSuite,
    options: RunOptions,
    channel: EventChannel,
    cancel: asyncio.Event,
    webhooks: list[Webhook],
    previous_run: TestRun | None,
) -> TestRun:
    orchestrator = build_orchestrator()
    try:
        run = await orchestrator.run(
            suite,
            options,
            channel,
            cancel,
            webhooks=webhooks,
            previous_run=previous_run,
            on_finished=_persist_run,
        )
    except Exception as e:
        logger.exception(f"Run {options.run_id} crashed")
        if not channel.closed:
            channel.send(Event(EventType.error, ErrorPayload(message=str(e), code="INTERNAL_ERROR")))
        raise
    finally:
        channel.close()
    return run


@router.post("/suites", response_model=SuiteCreatedResponse, status_code=201)
async def create_suite(suite: TestSuite, db: Db) -> SuiteCreatedResponse:
    await insert_suite(db, suite)
    return SuiteCreatedResponse(id=suite.id, name=suite.name, test_case_count=len(suite.test_cases))


@router.get("/suites/{suite_id}", response_model=TestSuite)
async def get_suite(suite_id: str, db: Db) -> TestSuite:
    suite = await fetch_suite_by_id(db, suite_id)
    if suite is None:
        raise HTTPException(status_code=404, detail="Suite not found")
    return suite


@router.post("/suites/{suite_id}/runs")
async def run_suite(suite_id: str, request: RunRequest, db: Db) -> StreamingResponse:
    suite = await fetch_suite_by_id(db, suite_id)
    if suite is None:
        raise HTTPException(status_code=404, detail="Suite not found")

    options = RunOptions(
        iterations=request.iterations,
        tags=request.tags,
        note=request.note,
        model_override=request.model_override,
        max_concurrency=request.max_concurrency or settings.max_concurrent_tests,
    )
    previous_run = await fetch_previous_completed_run(db, suite_id)
    webhooks = await fetch_active_webhooks(db)

    channel = EventChannel()
    cancel = asyncio.Event()
    task = asyncio.create_task(
        _execute_run(suite, options, channel, cancel, webhooks, previous_run)
    )
    _background.add(task)
    task.add_done_callback(_background.discard)

    async def event_gen() -> AsyncIterator[str]:
        drained = False
        try:
            async for event in channel:
                yield event.encode()
            drained = True
        finally:
            if not drained:
                logger.info(f"Client left run {options.run_id}; finishing in-flight items only")
                cancel.set()

    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/suites/{suite_id}/runs", response_model=list[RunSummaryResponse])
async def list_runs(suite_id: str, db: Db) -> list[RunSummaryResponse]:
    runs = await fetch_runs_for_suite(db, suite_id)
    return [
        RunSummaryResponse(
            id=run.id,
            status=run.status,
            run_at=run.run_at,
            note=run.note,
            iterations=run.iterations,
            summary=run.summary,
        )
        for run in runs
    ]


@router.get("/runs/{run_id}", response_model=TestRun)
async def get_run(run_id: str, db: Db) -> TestRun:
    run = await fetch_run_by_id(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.patch("/runs/{run_id}", response_model=TestRun)
async def update_note(run_id: str, update: NoteUpdate, db: Db) -> TestRun:
    run = await update_run_note(db, run_id, update.note)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/runs/{baseline_id}/compare/{candidate_id}", response_model=ComparisonResult)
async def compare(baseline_id: str, candidate_id: str, db: Db) -> ComparisonResult:
    baseline = await fetch_run_by_id(db, baseline_id)
    candidate = await fetch_run_by_id(db, candidate_id)
    if baseline is None or candidate is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return compare_runs(baseline, candidate)


@router.post("/webhooks", response_model=Webhook, status_code=201)
async def create_webhook(webhook: Webhook, db: Db) -> Webhook:
    await save_webhook(db, webhook)
    return webhook


@router.get("/webhooks/{webhook_id}", response_model=Webhook)
async def get_webhook(webhook_id: str, db: Db) -> Webhook:
    webhook = await fetch_webhook_by_id(db, webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook
