import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from uuid import UUID, uuid4

import httpx
from pydantic import BaseModel, Field

from suite_runner.errors import InvocationError, JudgeError, OrchestrationError
from suite_runner.events import (
    CompletePayload,
    ConnectedPayload,
    ErrorPayload,
    Event,
    EventChannel,
    EventType,
    HeartbeatPayload,
    ProgressPayload,
)
from suite_runner.judge import JudgeEvaluator
from suite_runner.llm import CompletionProvider
from suite_runner.logging import get_logger
from suite_runner.models import (
    ModelOverride,
    RunStatus,
    RunSummary,
    TestCase,
    TestResult,
    TestRun,
    TestSuite,
    Webhook,
)
from suite_runner.rules import evaluate_rules
from suite_runner.targets import TargetInvoker, build_invoker
from suite_runner.webhooks import WebhookDispatcher

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 5
CONFIG_ERROR_CODE = "ORCHESTRATION_ERROR"


class RunOptions(BaseModel):
    run_id: UUID = Field(default_factory=uuid4)
    iterations: int = Field(default=1, ge=1)
    tags: list[str] = Field(default_factory=list)
    max_concurrency: int | None = Field(default=None, ge=1)
    model_override: ModelOverride | None = None
    note: str | None = None


@dataclass(frozen=True)
class WorkItem:
    index: int
    test_case: TestCase
    iteration: int


def select_test_cases(test_cases: Iterable[TestCase], tags: Iterable[str] = ()) -> list[TestCase]:
    wanted = {t.strip().lower() for t in tags if t.strip()}
    return [
        tc for tc in test_cases
        if tc.enabled and (not wanted or wanted.intersection(tc.tags))
    ]


def expand_work(test_cases: list[TestCase], iterations: int) -> list[WorkItem]:
    items: list[WorkItem] = []
    for iteration in range(1, iterations + 1):
        for test_case in test_cases:
            items.append(WorkItem(index=len(items), test_case=test_case, iteration=iteration))
    return items


def summarize(results: list[TestResult]) -> RunSummary:
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    scores = [r.judge_score for r in results if r.judge_score is not None]
    return RunSummary(
        total=total,
        passed=passed,
        failed=total - passed,
        avg_score=round(sum(scores) / len(scores), 2) if scores else None,
        avg_response_time=round(sum(r.response_time for r in results) / total) if total else 0,
    )


class RunOrchestrator:
    def __init__(
        self,
        providers: Mapping[str, CompletionProvider],
        transport: httpx.AsyncBaseTransport | None = None,
        dispatcher: WebhookDispatcher | None = None,
        heartbeat_interval_s: float = 15.0,
    ) -> None:
        self.providers = providers
        self.transport = transport
        self.dispatcher = dispatcher
        self.heartbeat_interval_s = heartbeat_interval_s

    def prepare(self, suite: TestSuite, options: RunOptions) -> tuple[TargetInvoker, JudgeEvaluator | None]:
        invoker = build_invoker(suite.target, self.providers, options.model_override, self.transport)
        invoker.validate()

        judge_config = suite.judge_config
        if not judge_config.enabled:
            return invoker, None
        if not judge_config.criteria:
            raise OrchestrationError("Judge is enabled but has no scoring criteria")
        provider = self.providers.get(judge_config.provider)
        if provider is None:
            raise OrchestrationError(f"Unknown judge provider: {judge_config.provider}")
        if not provider.is_configured():
            raise OrchestrationError(f"No credentials configured for judge provider '{judge_config.provider}'")
        return invoker, JudgeEvaluator(provider)

    async def execute_item(
        self,
        item: WorkItem,
        suite: TestSuite,
        invoker: TargetInvoker,
        judge: JudgeEvaluator | None,
    ) -> TestResult:
        test_case = item.test_case
        result = TestResult(
            test_case_id=test_case.id,
            test_case_name=test_case.name,
            inputs=dict(test_case.inputs),
            iteration=item.iteration,
        )

        try:
            invocation = await invoker.invoke(test_case.inputs)
        except InvocationError as e:
            logger.warning(f"Target invocation failed for {test_case.name or test_case.id}: {e}")
            result.error = str(e)
            result.validation_errors = [str(e)]
            return result

        result.output = invocation.output
        result.response_time = invocation.response_time_ms

        outcome = evaluate_rules(
            [*suite.validation_rules, *test_case.validation_rules],
            invocation.output,
            invocation.response_time_ms,
        )
        result.validation_passed = outcome.passed
        result.validation_errors = outcome.errors
        result.validation_warnings = outcome.warnings

        if judge is None:
            return result
        try:
            verdict = await judge.evaluate(
                suite.judge_config, test_case, invocation.output, test_case.judge_validation_rules
            )
        except JudgeError as e:
            logger.warning(f"Judge failed for {test_case.name or test_case.id}: {e}")
            result.error = f"Judge evaluation failed: {e}"
            result.judge_validation_passed = False
            result.judge_validation_errors = [result.error]
            return result

        result.judge_score = verdict.score
        result.judge_scores = verdict.scores
        result.judge_reasoning = verdict.reasoning
        result.judge_validation_passed = verdict.validation_passed
        result.judge_validation_errors = verdict.validation_errors
        result.judge_validation_warnings = verdict.validation_warnings
        return result

    async def _heartbeat(self, channel: EventChannel) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            channel.send(Event(EventType.heartbeat, HeartbeatPayload()))

    def _notify(
        self,
        run: TestRun,
        suite: TestSuite,
        webhooks: Iterable[Webhook],
        previous_run: TestRun | None,
    ) -> None:
        if self.dispatcher is not None:
            self.dispatcher.notify(run, suite, webhooks, previous_run)

    async def run(
        self,
        suite: TestSuite,
        options: RunOptions,
        channel: EventChannel,
        cancel: asyncio.Event | None = None,
        webhooks: Iterable[Webhook] = (),
        previous_run: TestRun | None = None,
        on_finished: Callable[[TestRun], Awaitable[None]] | None = None,
    ) -> TestRun:
        """Execute ``suite`` and stream its events into ``channel``.

        ``on_finished`` is awaited with the final run before the terminal
        event (``complete`` or ``error``) is sent.
        """
        cancel = cancel or asyncio.Event()
        work = expand_work(select_test_cases(suite.test_cases, options.tags), options.iterations)
        run = TestRun(
            id=options.run_id,
            suite_id=suite.id,
            note=options.note,
            iterations=options.iterations,
            model_override=options.model_override,
        )
        channel.send(Event(EventType.connected, ConnectedPayload(run_id=run.id, total=len(work))))

        try:
            invoker, judge = self.prepare(suite, options)
        except OrchestrationError as e:
            logger.error(f"Run {run.id} aborted before dispatch: {e}")
            run.status = RunStatus.failed
            if on_finished is not None:
                await on_finished(run)
            channel.send(Event(EventType.error, ErrorPayload(message=str(e), code=CONFIG_ERROR_CODE)))
            channel.close()
            self._notify(run, suite, webhooks, previous_run)
            return run

        run.status = RunStatus.running
        concurrency = options.max_concurrency or DEFAULT_MAX_CONCURRENCY
        logger.info(f"Run {run.id}: suite={suite.name!r} items={len(work)} concurrency={concurrency}")

        semaphore = asyncio.Semaphore(concurrency)
        slots: list[TestResult | None] = [None] * len(work)
        started = 0

        async def worker(item: WorkItem) -> None:
            nonlocal started
            async with semaphore:
                if cancel.is_set():
                    return
                started += 1
                channel.send(Event(EventType.progress, ProgressPayload(
                    current=started,
                    total=len(work),
                    iteration=item.iteration,
                    test_case_id=item.test_case.id,
                    test_case_name=item.test_case.name,
                )))
                try:
                    result = await self.execute_item(item, suite, invoker, judge)
                except Exception as e:
                    logger.exception(f"Unexpected failure running {item.test_case.name or item.test_case.id}")
                    message = f"{type(e).__name__}: {e}"
                    result = TestResult(
                        test_case_id=item.test_case.id,
                        test_case_name=item.test_case.name,
                        inputs=dict(item.test_case.inputs),
                        iteration=item.iteration,
                        validation_errors=[message],
                        error=message,
                    )
                slots[item.index] = result
                channel.send(Event(EventType.result, result))

        heartbeat = asyncio.create_task(self._heartbeat(channel))
        try:
            await asyncio.gather(*(worker(item) for item in work))
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        run.results = [r for r in slots if r is not None]
        run.summary = summarize(run.results)
        finished = len(run.results) == len(work)
        run.status = RunStatus.completed if finished else RunStatus.failed
        logger.info(
            f"Run {run.id} {run.status}: {run.summary.passed}/{run.summary.total} passed"
            + ("" if finished else f", {len(work) - len(run.results)} item(s) not dispatched")
        )

        if on_finished is not None:
            await on_finished(run)
        channel.send(Event(EventType.complete, CompletePayload(
            run_id=run.id,
            status="completed" if finished else "incomplete",
            test_run=run,
        )))
        channel.close()
        self._notify(run, suite, webhooks, previous_run)
        return run
