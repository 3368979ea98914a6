import asyncio
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import patch
from uuid import uuid4

import aiosqlite
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import api.routes as routes
from api.database import (
    create_tables,
    fetch_active_webhooks,
    fetch_previous_completed_run,
    fetch_run_by_id,
    fetch_runs_for_suite,
    fetch_suite_by_id,
    fetch_webhook_by_id,
    get_db,
    init_db,
    insert_suite,
    record_webhook_delivery,
    save_run,
    save_webhook,
    update_run_note,
)
from api.main import app, lifespan
from api.schemas import RunRequest
from suite_runner.llm import CompletionRequest
from suite_runner.models import (
    PromptTarget,
    RunStatus,
    TestCase,
    TestResult,
    TestRun,
    TestSuite,
    Webhook,
    WebhookStatus,
)
from suite_runner.orchestrator import summarize
from suite_runner.webhooks import DeliveryResult


class EchoProvider:
    name = "anthropic"

    def is_configured(self) -> bool:
        return True

    async def complete(self, request: CompletionRequest) -> str:
        return request.user_message


class SlowEchoProvider(EchoProvider):
    async def complete(self, request: CompletionRequest) -> str:
        await asyncio.sleep(0.05)
        return request.user_message


@pytest_asyncio.fixture
async def db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await create_tables(conn)
        yield conn


@pytest_asyncio.fixture
async def client(db: aiosqlite.Connection) -> AsyncIterator[AsyncClient]:
    async def override_get_db() -> AsyncIterator[aiosqlite.Connection]:
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def run_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "runs.db"
    async with aiosqlite.connect(db_path) as conn:
        await create_tables(conn)
    return db_path


SAMPLE_SUITE = {
    "name": "echo-suite",
    "target": {"type": "prompt", "content": "{{ q }}"},
    "testCases": [
        {"name": "short", "inputs": {"q": "hi"}, "validationRules": [{"type": "minLength", "value": 5}]},
        {"name": "long", "inputs": {"q": "hello world"}, "validationRules": [{"type": "minLength", "value": 5}]},
    ],
}


def make_suite() -> TestSuite:
    return TestSuite(name="suite", target=PromptTarget(content="x"), test_cases=[TestCase(name="a")])


def make_run(suite: TestSuite, passed: list[bool], **kwargs: Any) -> TestRun:
    results = [
        TestResult(test_case_id=tc.id, test_case_name=tc.name, validation_passed=p)
        for tc, p in zip(suite.test_cases, passed)
    ]
    defaults = dict(suite_id=suite.id, status=RunStatus.completed, results=results, summary=summarize(results))
    return TestRun(**{**defaults, **kwargs})


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


async def wait_for_background_runs() -> None:
    await asyncio.gather(*list(routes._background))


async def load_run(db_path: Path, run_id: str) -> TestRun | None:
    async with aiosqlite.connect(db_path) as conn:
        conn.row_factory = aiosqlite.Row
        return await fetch_run_by_id(conn, run_id)


async def load_webhook(db_path: Path, webhook_id: str) -> Webhook | None:
    async with aiosqlite.connect(db_path) as conn:
        conn.row_factory = aiosqlite.Row
        return await fetch_webhook_by_id(conn, webhook_id)


class TestDatabase:
    async def test_init_db_creates_tables(self, tmp_path: Path) -> None:
        db_path = tmp_path / "test.db"
        with patch("api.database.DB_PATH", db_path):
            await init_db()
        async with aiosqlite.connect(db_path) as db:
            async with db.execute("SELECT name FROM sqlite_master WHERE type='table'") as cursor:
                tables = {row[0] for row in await cursor.fetchall()}
        assert {"suites", "runs", "webhooks"} <= tables

    async def test_get_db_yields_connection(self, tmp_path: Path) -> None:
        with patch("api.database.DB_PATH", tmp_path / "test.db"):
            gen = get_db()
            conn = await gen.__anext__()
            assert isinstance(conn, aiosqlite.Connection)
            try:
                await gen.__anext__()
            except StopAsyncIteration:
                pass

    async def test_suite_round_trip(self, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        await insert_suite(db, suite)
        assert await fetch_suite_by_id(db, str(suite.id)) == suite

    async def test_fetch_missing_suite(self, db: aiosqlite.Connection) -> None:
        assert await fetch_suite_by_id(db, "nonexistent-id") is None

    async def test_save_run_upserts(self, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        run = make_run(suite, [True], status=RunStatus.running)
        await save_run(db, run)
        run.status = RunStatus.completed
        await save_run(db, run)
        stored = await fetch_run_by_id(db, str(run.id))
        assert stored is not None
        assert stored.status == RunStatus.completed
        assert len(await fetch_runs_for_suite(db, str(suite.id))) == 1

    async def test_runs_listed_newest_first(self, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        now = datetime.now(UTC)
        older = make_run(suite, [True], run_at=now - timedelta(hours=1))
        newer = make_run(suite, [True], run_at=now)
        await save_run(db, older)
        await save_run(db, newer)
        runs = await fetch_runs_for_suite(db, str(suite.id))
        assert [r.id for r in runs] == [newer.id, older.id]

    async def test_previous_completed_run_skips_failed(self, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        now = datetime.now(UTC)
        completed = make_run(suite, [True], run_at=now - timedelta(hours=1))
        failed = make_run(suite, [], status=RunStatus.failed, run_at=now)
        await save_run(db, completed)
        await save_run(db, failed)
        previous = await fetch_previous_completed_run(db, str(suite.id))
        assert previous is not None
        assert previous.id == completed.id

    async def test_update_run_note(self, db: aiosqlite.Connection) -> None:
        run = make_run(make_suite(), [True])
        await save_run(db, run)
        updated = await update_run_note(db, str(run.id), "new prompt wording")
        assert updated is not None
        assert (await fetch_run_by_id(db, str(run.id))).note == "new prompt wording"
        assert await update_run_note(db, "missing", "x") is None

    async def test_active_webhooks_only(self, db: aiosqlite.Connection) -> None:
        active = Webhook(url="https://hooks.example.com/a")
        disabled = Webhook(url="https://hooks.example.com/b", status=WebhookStatus.failed)
        await save_webhook(db, active)
        await save_webhook(db, disabled)
        assert [w.id for w in await fetch_active_webhooks(db)] == [active.id]

    async def test_record_webhook_delivery_updates_stored_row(self, db: aiosqlite.Connection) -> None:
        hook = Webhook(url="https://hooks.example.com/a", consecutive_failures=4)
        await save_webhook(db, hook)
        updated = await record_webhook_delivery(db, str(hook.id), DeliveryResult(success=False, attempts=3))
        assert updated is not None
        assert updated.consecutive_failures == 5
        stored = await fetch_webhook_by_id(db, str(hook.id))
        assert stored.consecutive_failures == 5
        assert stored.last_failure is not None

    async def test_record_webhook_delivery_unknown_webhook(self, db: aiosqlite.Connection) -> None:
        result = DeliveryResult(success=True, attempts=1)
        assert await record_webhook_delivery(db, str(uuid4()), result) is None


class TestLifespan:
    async def test_lifespan_initializes(self) -> None:
        with patch("api.main.init_db") as mock_init, patch("api.main.setup_logging") as mock_logging:
            async with lifespan(app):
                pass
        mock_init.assert_called_once()
        mock_logging.assert_called_once()


class TestSuites:
    async def test_create_returns_201(self, client: AsyncClient) -> None:
        response = await client.post("/suites", json=SAMPLE_SUITE)
        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "echo-suite"
        assert data["testCaseCount"] == 2

    async def test_create_rejects_invalid_rule(self, client: AsyncClient) -> None:
        bad = {**SAMPLE_SUITE, "validationRules": [{"type": "sentiment", "value": "happy"}]}
        response = await client.post("/suites", json=bad)
        assert response.status_code == 422

    async def test_get_suite(self, client: AsyncClient) -> None:
        created = (await client.post("/suites", json=SAMPLE_SUITE)).json()
        response = await client.get(f"/suites/{created['id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["target"]["type"] == "prompt"
        assert data["testCases"][0]["validationRules"][0]["type"] == "minLength"

    async def test_get_unknown_suite(self, client: AsyncClient) -> None:
        response = await client.get(f"/suites/{uuid4()}")
        assert response.status_code == 404


class TestRunStream:
    async def test_streams_events_and_persists_run(self, client: AsyncClient, run_db: Path) -> None:
        suite_id = (await client.post("/suites", json=SAMPLE_SUITE)).json()["id"]

        with patch("api.routes.DB_PATH", run_db), \
                patch("api.routes.default_providers", return_value={"anthropic": EchoProvider()}):
            response = await client.post(f"/suites/{suite_id}/runs", json={"iterations": 2, "note": "first"})
            await wait_for_background_runs()

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache, no-transform"

        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "connected"
        assert names[-1] == "complete"
        assert names.count("result") == 4
        complete = events[-1][1]
        assert complete["status"] == "completed"
        summary = complete["testRun"]["summary"]
        assert (summary["total"], summary["passed"], summary["failed"]) == (4, 2, 2)

        async with aiosqlite.connect(run_db) as conn:
            conn.row_factory = aiosqlite.Row
            stored = await fetch_run_by_id(conn, complete["runId"])
        assert stored is not None
        assert stored.note == "first"
        assert stored.status == RunStatus.completed

    async def test_configuration_fault_streams_error(self, client: AsyncClient, run_db: Path) -> None:
        suite = {**SAMPLE_SUITE, "target": {"type": "prompt", "content": "x", "provider": "nobody"}}
        suite_id = (await client.post("/suites", json=suite)).json()["id"]

        with patch("api.routes.DB_PATH", run_db), \
                patch("api.routes.default_providers", return_value={"anthropic": EchoProvider()}):
            response = await client.post(f"/suites/{suite_id}/runs", json={})
            await wait_for_background_runs()

        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["connected", "error"]
        assert events[1][1]["code"] == "ORCHESTRATION_ERROR"

    async def test_run_is_stored_before_terminal_event(self, client: AsyncClient, run_db: Path) -> None:
        suite_id = (await client.post("/suites", json=SAMPLE_SUITE)).json()["id"]

        with patch("api.routes.DB_PATH", run_db), \
                patch("api.routes.default_providers", return_value={"anthropic": EchoProvider()}):
            response = await client.post(f"/suites/{suite_id}/runs", json={})
            # read back before the background task is awaited
            complete = parse_sse(response.text)[-1][1]
            stored = await load_run(run_db, complete["runId"])
            await wait_for_background_runs()

        assert stored is not None
        assert stored.status == RunStatus.completed
        assert len(stored.results) == 2

    async def test_configuration_fault_run_is_stored_as_failed(self, client: AsyncClient, run_db: Path) -> None:
        suite = {**SAMPLE_SUITE, "target": {"type": "prompt", "content": "x", "provider": "nobody"}}
        suite_id = (await client.post("/suites", json=suite)).json()["id"]

        with patch("api.routes.DB_PATH", run_db), \
                patch("api.routes.default_providers", return_value={"anthropic": EchoProvider()}):
            response = await client.post(f"/suites/{suite_id}/runs", json={})
            connected = parse_sse(response.text)[0][1]
            stored = await load_run(run_db, connected["runId"])
            await wait_for_background_runs()

        assert stored is not None
        assert stored.status == RunStatus.failed

    async def test_client_disconnect_cancels_remaining_items(
        self, db: aiosqlite.Connection, run_db: Path
    ) -> None:
        suite = TestSuite.model_validate(SAMPLE_SUITE)
        await insert_suite(db, suite)
        request = RunRequest(iterations=2, max_concurrency=1)

        with patch("api.routes.DB_PATH", run_db), \
                patch("api.routes.default_providers", return_value={"anthropic": SlowEchoProvider()}):
            response = await routes.run_suite(str(suite.id), request, db)
            frames = response.body_iterator
            first = await frames.__anext__()
            second = await frames.__anext__()
            await frames.aclose()
            await wait_for_background_runs()

        connected = parse_sse(first)[0]
        assert connected[0] == "connected"
        assert connected[1]["total"] == 4
        assert parse_sse(second)[0][0] == "progress"

        stored = await load_run(run_db, connected[1]["runId"])
        assert stored is not None
        assert stored.status == RunStatus.failed
        assert 1 <= len(stored.results) < 4

    async def test_unknown_suite(self, client: AsyncClient) -> None:
        response = await client.post(f"/suites/{uuid4()}/runs", json={})
        assert response.status_code == 404

    async def test_rejects_zero_iterations(self, client: AsyncClient) -> None:
        suite_id = (await client.post("/suites", json=SAMPLE_SUITE)).json()["id"]
        response = await client.post(f"/suites/{suite_id}/runs", json={"iterations": 0})
        assert response.status_code == 422


class TestRuns:
    async def test_list_runs(self, client: AsyncClient, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        await save_run(db, make_run(suite, [True]))
        response = await client.get(f"/suites/{suite.id}/runs")
        assert response.status_code == 200
        runs = response.json()
        assert len(runs) == 1
        assert runs[0]["summary"]["passed"] == 1
        assert "runAt" in runs[0]

    async def test_get_run(self, client: AsyncClient, db: aiosqlite.Connection) -> None:
        run = make_run(make_suite(), [False])
        await save_run(db, run)
        response = await client.get(f"/runs/{run.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(run.id)
        assert data["results"][0]["validationPassed"] is False

    async def test_get_unknown_run(self, client: AsyncClient) -> None:
        response = await client.get("/runs/nonexistent-id")
        assert response.status_code == 404

    async def test_update_note(self, client: AsyncClient, db: aiosqlite.Connection) -> None:
        run = make_run(make_suite(), [True])
        await save_run(db, run)
        response = await client.patch(f"/runs/{run.id}", json={"note": "after prompt tweak"})
        assert response.status_code == 200
        assert response.json()["note"] == "after prompt tweak"

    async def test_compare_runs(self, client: AsyncClient, db: aiosqlite.Connection) -> None:
        suite = make_suite()
        baseline = make_run(suite, [True])
        candidate = make_run(suite, [False])
        await save_run(db, baseline)
        await save_run(db, candidate)
        response = await client.get(f"/runs/{baseline.id}/compare/{candidate.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["regressed"] == 1
        assert data["summary"]["passRateDelta"] == -100.0
        assert data["testCases"][0]["status"] == "regressed"

    async def test_compare_unknown_run(self, client: AsyncClient, db: aiosqlite.Connection) -> None:
        run = make_run(make_suite(), [True])
        await save_run(db, run)
        response = await client.get(f"/runs/{run.id}/compare/{uuid4()}")
        assert response.status_code == 404


class TestWebhooks:
    async def test_create_and_fetch(self, client: AsyncClient) -> None:
        response = await client.post(
            "/webhooks",
            json={"name": "ci", "url": "https://hooks.example.com/ci", "events": ["test.run.failed"]},
        )
        assert response.status_code == 201
        created = response.json()
        assert len(created["secret"]) == 64
        assert created["retryCount"] == 3

        fetched = await client.get(f"/webhooks/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["events"] == ["test.run.failed"]

    async def test_rejects_unknown_event(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks", json={"url": "https://x.example.com", "events": ["nope"]})
        assert response.status_code == 422

    async def test_get_unknown_webhook(self, client: AsyncClient) -> None:
        response = await client.get(f"/webhooks/{uuid4()}")
        assert response.status_code == 404


class TestDeliveryRecording:
    async def test_overlapping_failures_both_count(self, run_db: Path) -> None:
        hook = Webhook(url="https://hooks.example.com/a")
        async with aiosqlite.connect(run_db) as conn:
            await save_webhook(conn, hook)
        first, second = hook.model_copy(deep=True), hook.model_copy(deep=True)
        failure = DeliveryResult(success=False, attempts=3, error="HTTP 500")

        with patch("api.routes.DB_PATH", run_db):
            await asyncio.gather(
                routes._record_delivery(first, failure),
                routes._record_delivery(second, failure),
            )

        stored = await load_webhook(run_db, str(hook.id))
        assert stored.consecutive_failures == 2
        assert stored.status == WebhookStatus.active

    async def test_stale_success_does_not_reenable_disabled_webhook(self, run_db: Path) -> None:
        stale = Webhook(url="https://hooks.example.com/a")
        disabled = stale.model_copy(update={"status": WebhookStatus.failed, "consecutive_failures": 10})
        async with aiosqlite.connect(run_db) as conn:
            await save_webhook(conn, disabled)

        with patch("api.routes.DB_PATH", run_db):
            await routes._record_delivery(stale, DeliveryResult(success=True, attempts=1, status_code=200))

        stored = await load_webhook(run_db, str(stale.id))
        assert stored.status == WebhookStatus.failed
        assert stored.consecutive_failures == 0
        assert stored.last_success is not None
