import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

from suite_runner.config import settings
from suite_runner.events import EventChannel, EventType
from suite_runner.llm import CompletionProvider, default_providers
from suite_runner.logging import setup_logging
from suite_runner.models import ModelOverride, TestRun, TestSuite
from suite_runner.orchestrator import RunOptions, RunOrchestrator

SUITES_DIR = Path(__file__).parent / "suites"


def load_suite(path: Path) -> TestSuite:
    with open(path) as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Expected a JSON object, got {type(raw).__name__}")
    return TestSuite.model_validate(raw)


def print_summary(run: TestRun) -> None:
    summary = run.summary

    print("\n" + "=" * 55)
    print(f"  SUITE RUN — {run.run_at.astimezone(UTC).strftime('%Y-%m-%d %H:%M:%S')} UTC")
    print("=" * 55)

    for result in run.results:
        status = "✓ PASS" if result.passed else "✗ FAIL"
        score = f"[{result.judge_score:.2f}]" if result.judge_score is not None else "[ -- ]"
        name = result.test_case_name or str(result.test_case_id)
        print(f"\n{status}  {score}  {name[:45]} (#{result.iteration})")
        for message in [*result.validation_errors, *result.judge_validation_errors]:
            print(f"         - {message}")
        for message in [*result.validation_warnings, *result.judge_validation_warnings]:
            print(f"         ! {message}")

    print("\n" + "-" * 55)
    print(f"  Status:       {run.status}")
    print(f"  Passed:       {summary.passed}/{summary.total}")
    if summary.avg_score is not None:
        print(f"  Avg Score:    {summary.avg_score:.2f}")
    print(f"  Avg Response: {summary.avg_response_time}ms")
    print("=" * 55 + "\n")


def save_run(run: TestRun) -> Path:
    settings.results_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    output_path = settings.results_dir / f"run_{stamp}_{run.id}.json"
    output_path.write_text(json.dumps(run.to_wire(), indent=2, ensure_ascii=False))
    print(f"  Results saved → {output_path}\n")
    return output_path


async def _drive(
    suite: TestSuite,
    options: RunOptions,
    providers: dict[str, CompletionProvider],
) -> TestRun:
    channel = EventChannel()
    orchestrator = RunOrchestrator(providers, heartbeat_interval_s=settings.heartbeat_interval_s)
    task = asyncio.create_task(orchestrator.run(suite, options, channel))
    async for event in channel:
        if event.type == EventType.progress:
            data = event.data
            print(f"  [{data.current}/{data.total}] {data.test_case_name or data.test_case_id}")
        elif event.type == EventType.error:
            print(f"  ERROR: {event.data.message}")
    return await task


def run_suite_file(
    suite_path: Path,
    iterations: int = 1,
    tags: list[str] | None = None,
    max_concurrency: int | None = None,
    model_override: ModelOverride | None = None,
    providers: dict[str, CompletionProvider] | None = None,
) -> TestRun:
    suite = load_suite(suite_path)
    options = RunOptions(
        iterations=iterations,
        tags=tags or [],
        max_concurrency=max_concurrency or settings.max_concurrent_tests,
        model_override=model_override,
    )

    print(f"\nStarting suite: '{suite.name}'  ({len(suite.test_cases)} test cases × {iterations})")

    if providers is None:
        providers = default_providers()
    run = asyncio.run(_drive(suite, options, providers))
    print_summary(run)
    save_run(run)
    return run


if __name__ == "__main__":  # pragma: no cover
    setup_logging(settings.log_level)
    run_suite_file(SUITES_DIR / "sample.json")
