import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from referencing.exceptions import Unresolvable

from suite_runner.errors import RuleFault
from suite_runner.logging import get_logger
from suite_runner.models import (
    ContainsRule,
    ExcludesRule,
    JsonSchemaRule,
    MaxLengthRule,
    MaxResponseTimeRule,
    MinLengthRule,
    RegexRule,
    Severity,
    ValidationRule,
)

logger = get_logger(__name__)


@dataclass
class RuleOutcome:
    passed: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _check_json_schema(output: str, schema_text: str) -> str | None:
    try:
        document = json.loads(output)
    except json.JSONDecodeError:
        return "Output is not valid JSON"
    try:
        schema = json.loads(schema_text)
    except json.JSONDecodeError as e:
        raise RuleFault(f"Invalid JSON schema definition: {e}") from e
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise RuleFault(f"Invalid JSON schema definition: {e.message}") from e

    try:
        error = next(iter(Draft7Validator(schema).iter_errors(document)), None)
    except Unresolvable as e:
        raise RuleFault(f"Unresolvable schema reference: {e}") from e
    if error is None:
        return None
    location = ".".join(str(p) for p in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def check_rule(rule: ValidationRule, output: str, response_time_ms: int) -> str | None:
    """Return a failure message when ``rule`` does not hold, ``None`` when it does.

    Raises ``RuleFault`` when the rule itself cannot be evaluated.
    """
    match rule:
        case ContainsRule(value=value):
            if value not in output:
                return f'Must contain: "{value}"'
        case ExcludesRule(value=value):
            if value in output:
                return f'Must not contain: "{value}"'
        case MinLengthRule(value=value):
            if len(output) < value:
                return f"Output too short: minimum {value} characters required"
        case MaxLengthRule(value=value):
            if len(output) > value:
                return f"Output too long: maximum {value} characters allowed"
        case RegexRule(value=value):
            try:
                pattern = re.compile(value)
            except re.error as e:
                raise RuleFault(f"Invalid pattern {value!r}: {e}") from e
            if pattern.search(output) is None:
                return f"Must match pattern: {value}"
        case JsonSchemaRule(value=value):
            problem = _check_json_schema(output, value)
            if problem is not None:
                return f"JSON schema validation failed: {problem}"
        case MaxResponseTimeRule(value=value):
            if response_time_ms > value:
                return f"Response too slow: {response_time_ms}ms exceeds maximum {value}ms"
        case _:
            raise RuleFault(f"Unsupported rule: {rule!r}")
    return None


def evaluate_rules(
    rules: Iterable[ValidationRule], output: str, response_time_ms: int
) -> RuleOutcome:
    outcome = RuleOutcome()
    for rule in rules:
        try:
            problem = check_rule(rule, output, response_time_ms)
            if problem is not None and rule.message:
                problem = rule.message
        except RuleFault as e:
            logger.warning(f"Validation rule {rule.type} could not be evaluated: {e}")
            problem = f"Validation rule error ({rule.type}): {e}"

        if problem is None:
            continue
        if rule.severity == Severity.warning:
            outcome.warnings.append(problem)
        else:
            outcome.errors.append(problem)
            outcome.passed = False
    return outcome
