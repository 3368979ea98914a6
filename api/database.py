import json
from collections.abc import AsyncIterator

import aiosqlite

from suite_runner.config import settings
from suite_runner.models import RunStatus, TestRun, TestSuite, Webhook, WebhookStatus
from suite_runner.webhooks import DeliveryResult, record_outcome

DB_PATH = settings.db_path


async def get_db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        yield db


async def create_tables(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS suites (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            id TEXT PRIMARY KEY,
            suite_id TEXT NOT NULL,
            status TEXT NOT NULL,
            run_at TEXT NOT NULL,
            note TEXT,
            payload TEXT NOT NULL,
            FOREIGN KEY (suite_id) REFERENCES suites(id)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS webhooks (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            payload TEXT NOT NULL
        )
    """)
    await db.commit()


async def init_db() -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await create_tables(db)


def _dump(model: TestSuite | TestRun | Webhook) -> str:
    return json.dumps(model.to_wire(), ensure_ascii=False)


async def insert_suite(db: aiosqlite.Connection, suite: TestSuite) -> None:
    await db.execute(
        "INSERT INTO suites (id, name, payload, created_at) VALUES (?, ?, ?, ?)",
        (str(suite.id), suite.name, _dump(suite), suite.created_at.isoformat()),
    )
    await db.commit()


async def fetch_suite_by_id(db: aiosqlite.Connection, suite_id: str) -> TestSuite | None:
    async with db.execute("SELECT payload FROM suites WHERE id = ?", (suite_id,)) as cursor:
        row = await cursor.fetchone()
    return TestSuite.model_validate_json(row["payload"]) if row else None


async def save_run(db: aiosqlite.Connection, run: TestRun) -> None:
    await db.execute(
        """
        INSERT INTO runs (id, suite_id, status, run_at, note, payload)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            status = excluded.status, note = excluded.note, payload = excluded.payload
        """,
        (str(run.id), str(run.suite_id), run.status, run.run_at.isoformat(), run.note, _dump(run)),
    )
    await db.commit()


async def fetch_run_by_id(db: aiosqlite.Connection, run_id: str) -> TestRun | None:
    async with db.execute("SELECT payload FROM runs WHERE id = ?", (run_id,)) as cursor:
        row = await cursor.fetchone()
    return TestRun.model_validate_json(row["payload"]) if row else None


async def fetch_runs_for_suite(db: aiosqlite.Connection, suite_id: str) -> list[TestRun]:
    async with db.execute(
        "SELECT payload FROM runs WHERE suite_id = ? ORDER BY run_at DESC",
        (suite_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [TestRun.model_validate_json(row["payload"]) for row in rows]


async def fetch_previous_completed_run(db: aiosqlite.Connection, suite_id: str) -> TestRun | None:
    async with db.execute(
        """
        SELECT payload FROM runs
        WHERE suite_id = ? AND status = ?
        ORDER BY run_at DESC LIMIT 1
        """,
        (suite_id, RunStatus.completed),
    ) as cursor:
        row = await cursor.fetchone()
    return TestRun.model_validate_json(row["payload"]) if row else None


async def update_run_note(db: aiosqlite.Connection, run_id: str, note: str | None) -> TestRun | None:
    run = await fetch_run_by_id(db, run_id)
    if run is None:
        return None
    run.note = note
    await save_run(db, run)
    return run


async def save_webhook(db: aiosqlite.Connection, webhook: Webhook) -> None:
    await db.execute(
        """
        INSERT INTO webhooks (id, status, payload) VALUES (?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET status = excluded.status, payload = excluded.payload
        """,
        (str(webhook.id), webhook.status, _dump(webhook)),
    )
    await db.commit()


async def fetch_webhook_by_id(db: aiosqlite.Connection, webhook_id: str) -> Webhook | None:
    async with db.execute("SELECT payload FROM webhooks WHERE id = ?", (webhook_id,)) as cursor:
        row = await cursor.fetchone()
    return Webhook.model_validate_json(row["payload"]) if row else None


async def record_webhook_delivery(
    db: aiosqlite.Connection, webhook_id: str, result: DeliveryResult
) -> Webhook | None:
    """Apply a delivery outcome to the stored webhook row.

    The read and the write share one write-locked transaction, so concurrent
    deliveries each see the other's counters and a disabled webhook stays
    disabled.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        webhook = await fetch_webhook_by_id(db, webhook_id)
        if webhook is not None:
            record_outcome(webhook, result)
            await db.execute(
                "UPDATE webhooks SET status = ?, payload = ? WHERE id = ?",
                (webhook.status, _dump(webhook), webhook_id),
            )
    except Exception:
        await db.rollback()
        raise
    await db.commit()
    return webhook


async def fetch_active_webhooks(db: aiosqlite.Connection) -> list[Webhook]:
    async with db.execute(
        "SELECT payload FROM webhooks WHERE status = ?", (WebhookStatus.active,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [Webhook.model_validate_json(row["payload"]) for row in rows]
