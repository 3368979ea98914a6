import secrets
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Severity(StrEnum):
    fail = "fail"
    warning = "warning"


class RunStatus(StrEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class WebhookEvent(StrEnum):
    run_completed = "test.run.completed"
    run_failed = "test.run.failed"
    regression_detected = "test.regression.detected"


class WebhookStatus(StrEnum):
    active = "active"
    inactive = "inactive"
    failed = "failed"


class JudgeOperator(StrEnum):
    gte = "gte"
    lte = "lte"
    eq = "eq"


class AuthType(StrEnum):
    none = "none"
    bearer = "bearer"
    api_key = "apiKey"
    basic = "basic"


# Validation rules: one model per rule type, discriminated on ``type``.


class _Rule(WireModel):
    severity: Severity = Severity.fail
    message: str | None = None


class ContainsRule(_Rule):
    type: Literal["contains"] = "contains"
    value: str


class ExcludesRule(_Rule):
    type: Literal["excludes"] = "excludes"
    value: str


class MinLengthRule(_Rule):
    type: Literal["minLength"] = "minLength"
    value: int = Field(ge=0)


class MaxLengthRule(_Rule):
    type: Literal["maxLength"] = "maxLength"
    value: int = Field(ge=0)


class RegexRule(_Rule):
    type: Literal["regex"] = "regex"
    value: str


class JsonSchemaRule(_Rule):
    type: Literal["jsonSchema"] = "jsonSchema"
    value: str


class MaxResponseTimeRule(_Rule):
    type: Literal["maxResponseTime"] = "maxResponseTime"
    value: int = Field(ge=0)


ValidationRule = Annotated[
    ContainsRule
    | ExcludesRule
    | MinLengthRule
    | MaxLengthRule
    | RegexRule
    | JsonSchemaRule
    | MaxResponseTimeRule,
    Field(discriminator="type"),
]


class ScoringCriterion(WireModel):
    name: str
    description: str = ""
    weight: float = Field(default=1.0, gt=0)


class JudgeValidationRule(WireModel):
    criteria: str
    operator: JudgeOperator = JudgeOperator.gte
    threshold: float = Field(ge=0.0, le=1.0)
    severity: Severity = Severity.fail
    message: str | None = None


class JudgeConfig(WireModel):
    enabled: bool = False
    provider: str = "anthropic"
    model: str | None = None
    criteria: list[ScoringCriterion] = Field(default_factory=list)
    validation_rules: list[JudgeValidationRule] = Field(default_factory=list)
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)


class TestCase(WireModel):
    __test__ = False

    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    inputs: dict[str, str] = Field(default_factory=dict)
    expected_output: str | None = None
    notes: str = ""
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True
    validation_rules: list[ValidationRule] = Field(default_factory=list)
    judge_validation_rules: list[JudgeValidationRule] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        return [t.strip().lower() for t in tags if t.strip()]


# Targets


class PromptTarget(WireModel):
    type: Literal["prompt"] = "prompt"
    content: str
    system_prompt: str | None = None
    provider: str = "anthropic"
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)


class EndpointAuth(WireModel):
    type: AuthType = AuthType.none
    token: str | None = None
    api_key_header: str | None = None
    api_key: str | None = None
    username: str | None = None
    password: str | None = None


class EndpointTarget(WireModel):
    type: Literal["endpoint"] = "endpoint"
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    content_type: str = "application/json"
    body_template: str | None = None
    response_content_path: str | None = None
    auth: EndpointAuth = Field(default_factory=EndpointAuth)
    timeout_s: float = Field(default=60.0, gt=0)


Target = Annotated[PromptTarget | EndpointTarget, Field(discriminator="type")]


class TestSuite(WireModel):
    __test__ = False

    id: UUID = Field(default_factory=uuid4)
    name: str
    target: Target
    test_cases: list[TestCase] = Field(default_factory=list)
    validation_rules: list[ValidationRule] = Field(default_factory=list)
    judge_config: JudgeConfig = Field(default_factory=JudgeConfig)
    created_at: datetime = Field(default_factory=_utcnow)


class ModelOverride(WireModel):
    provider: str
    model: str


# Run records


class TestResult(WireModel):
    __test__ = False

    test_case_id: UUID
    test_case_name: str = ""
    inputs: dict[str, str] = Field(default_factory=dict)
    output: str = ""
    validation_passed: bool = False
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    judge_score: float | None = Field(default=None, ge=0.0, le=1.0)
    judge_scores: dict[str, float] | None = None
    judge_reasoning: str | None = None
    judge_validation_passed: bool | None = None
    judge_validation_errors: list[str] = Field(default_factory=list)
    judge_validation_warnings: list[str] = Field(default_factory=list)
    response_time: int = Field(default=0, ge=0)
    error: str | None = None
    iteration: int = Field(default=1, ge=1)

    @property
    def passed(self) -> bool:
        return self.validation_passed and self.judge_validation_passed is not False


class RunSummary(WireModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    avg_score: float | None = None
    avg_response_time: int = 0


class TestRun(WireModel):
    __test__ = False

    id: UUID = Field(default_factory=uuid4)
    suite_id: UUID | None = None
    run_at: datetime = Field(default_factory=_utcnow)
    status: RunStatus = RunStatus.pending
    note: str | None = None
    iterations: int = Field(default=1, ge=1)
    model_override: ModelOverride | None = None
    results: list[TestResult] = Field(default_factory=list)
    summary: RunSummary = Field(default_factory=RunSummary)


class Webhook(WireModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    url: str
    secret: str = Field(default_factory=lambda: secrets.token_hex(32))
    events: list[WebhookEvent] = Field(default_factory=lambda: [WebhookEvent.run_completed])
    suite_ids: list[UUID] = Field(default_factory=list)
    only_on_failure: bool = False
    only_on_regression: bool = False
    headers: dict[str, str] = Field(default_factory=dict)
    retry_count: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=1000, ge=0)
    status: WebhookStatus = WebhookStatus.active
    consecutive_failures: int = 0
    last_delivery: datetime | None = None
    last_success: datetime | None = None
    last_failure: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
