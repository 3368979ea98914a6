from enum import StrEnum
from uuid import UUID

from pydantic import Field

from suite_runner.models import TestResult, TestRun, WireModel

SCORE_DELTA_THRESHOLD = 0.05


class ComparisonStatus(StrEnum):
    improved = "improved"
    regressed = "regressed"
    unchanged = "unchanged"
    new = "new"
    removed = "removed"


DISPLAY_ORDER = [
    ComparisonStatus.regressed,
    ComparisonStatus.improved,
    ComparisonStatus.new,
    ComparisonStatus.unchanged,
    ComparisonStatus.removed,
]


class TestCaseComparison(WireModel):
    test_case_id: UUID
    test_case_name: str
    status: ComparisonStatus
    baseline_passed: bool | None = None
    candidate_passed: bool | None = None
    score_delta: float | None = None
    response_time_delta: int | None = None


class ComparisonSummary(WireModel):
    improved: int = 0
    regressed: int = 0
    unchanged: int = 0
    new: int = 0
    removed: int = 0
    pass_rate_delta: float = 0.0
    avg_score_delta: float | None = None
    avg_response_time_delta: int = 0


class ComparisonResult(WireModel):
    baseline_run_id: UUID
    candidate_run_id: UUID
    summary: ComparisonSummary
    test_cases: list[TestCaseComparison] = Field(default_factory=list)

    @property
    def has_regressions(self) -> bool:
        return self.summary.regressed > 0


def classify(baseline: TestResult, candidate: TestResult) -> TestCaseComparison:
    score_delta = None
    if baseline.judge_score is not None and candidate.judge_score is not None:
        score_delta = round(candidate.judge_score - baseline.judge_score, 4)

    if baseline.passed and not candidate.passed:
        status = ComparisonStatus.regressed
    elif not baseline.passed and candidate.passed:
        status = ComparisonStatus.improved
    elif score_delta is not None and abs(score_delta) > SCORE_DELTA_THRESHOLD:
        status = ComparisonStatus.improved if score_delta > 0 else ComparisonStatus.regressed
    else:
        status = ComparisonStatus.unchanged

    return TestCaseComparison(
        test_case_id=candidate.test_case_id,
        test_case_name=candidate.test_case_name or baseline.test_case_name,
        status=status,
        baseline_passed=baseline.passed,
        candidate_passed=candidate.passed,
        score_delta=score_delta,
        response_time_delta=candidate.response_time - baseline.response_time,
    )


def _pass_rate(run: TestRun) -> float:
    if run.summary.total == 0:
        return 0.0
    return run.summary.passed / run.summary.total * 100


def compare_runs(baseline: TestRun, candidate: TestRun) -> ComparisonResult:
    # with several iterations the last result of a case stands for it
    baseline_map = {r.test_case_id: r for r in baseline.results}
    candidate_map = {r.test_case_id: r for r in candidate.results}

    comparisons: list[TestCaseComparison] = []
    for test_case_id in [*baseline_map, *(k for k in candidate_map if k not in baseline_map)]:
        before = baseline_map.get(test_case_id)
        after = candidate_map.get(test_case_id)
        if before is None:
            comparisons.append(TestCaseComparison(
                test_case_id=test_case_id,
                test_case_name=after.test_case_name,
                status=ComparisonStatus.new,
                candidate_passed=after.passed,
            ))
        elif after is None:
            comparisons.append(TestCaseComparison(
                test_case_id=test_case_id,
                test_case_name=before.test_case_name,
                status=ComparisonStatus.removed,
                baseline_passed=before.passed,
            ))
        else:
            comparisons.append(classify(before, after))

    comparisons.sort(key=lambda c: DISPLAY_ORDER.index(c.status))

    counts = {status: 0 for status in ComparisonStatus}
    for c in comparisons:
        counts[c.status] += 1

    avg_score_delta = None
    if baseline.summary.avg_score is not None and candidate.summary.avg_score is not None:
        avg_score_delta = round((candidate.summary.avg_score - baseline.summary.avg_score) * 100, 1)

    summary = ComparisonSummary(
        improved=counts[ComparisonStatus.improved],
        regressed=counts[ComparisonStatus.regressed],
        unchanged=counts[ComparisonStatus.unchanged],
        new=counts[ComparisonStatus.new],
        removed=counts[ComparisonStatus.removed],
        pass_rate_delta=round(_pass_rate(candidate) - _pass_rate(baseline), 1),
        avg_score_delta=avg_score_delta,
        avg_response_time_delta=candidate.summary.avg_response_time - baseline.summary.avg_response_time,
    )
    return ComparisonResult(
        baseline_run_id=baseline.id,
        candidate_run_id=candidate.id,
        summary=summary,
        test_cases=comparisons,
    )
