"""Validation and transformation rules for ingested records.

A plan is an ordered list of steps, each naming a field and either a
validator or a transformer. Transformers rewrite a record's value;
validators produce outcomes with a severity. Failures never abort: they
accumulate into a :class:`ValidationReport` together with a profile of
every field and a derived quality score.

Usage::

    engine = ValidationEngine()
    plan = [
        TransformStep("email", "normalize_email"),
        ValidationStep("email", "email"),
        ValidationStep("name", "required"),
    ]
    records, report = engine.run(records, plan)
    report.quality_score
"""

from __future__ import annotations

import logging
import math
import re
import statistics as stats
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence, Union

from casegraph.errors import InvalidProperty
from casegraph.graph.models import is_empty_value
from casegraph.graph.query import parse_date
from casegraph.ingest.issues import Issue, Severity

logger = logging.getLogger(__name__)

Record = dict[str, Any]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\+]?[1-9][\d]{0,15}$")
CURRENCY_RE = re.compile(r"^[\$€£]?\d+\.?\d{0,2}$")
URL_RE = re.compile(r"^https?://")

PROFILE_SAMPLE_SIZE = 1000
PATTERN_SAMPLE_SIZE = 100
TOP_ISSUES = 10
HIGH_ERROR_RATE = 10.0
HIGH_NULL_RATE = 50.0

COMMON_PATTERNS: dict[str, re.Pattern[str]] = {
    "numeric": re.compile(r"^\d+$"),
    "alphanumeric": re.compile(r"^[a-zA-Z0-9]+$"),
    "email": EMAIL_RE,
    "phone": PHONE_RE,
    "date_iso": re.compile(r"^\d{4}-\d{2}-\d{2}"),
    "currency": CURRENCY_RE,
}


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationRule:
    """A named check. ``check`` returns True when the value is acceptable.

    Rules other than ``required`` skip empty values.
    """
    name: str
    check: Callable[[Any], bool]
    message: str
    severity: Severity = Severity.ERROR
    applies_to_empty: bool = False


@dataclass(frozen=True)
class TransformRule:
    name: str
    transform: Callable[[Any], Any]


def _pattern(regex: re.Pattern[str]) -> Callable[[Any], bool]:
    return lambda value: bool(regex.match(str(value)))


def _parse_date_text(value: Any) -> Any:
    if is_empty_value(value):
        return value
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else value


def _capitalize(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), value.lower())


DEFAULT_VALIDATORS: tuple[ValidationRule, ...] = (
    ValidationRule(
        "required", lambda v: not is_empty_value(v), "Field is required",
        applies_to_empty=True,
    ),
    ValidationRule("email", _pattern(EMAIL_RE), "Invalid email format"),
    ValidationRule("phone", _pattern(PHONE_RE), "Invalid phone number format", Severity.WARN),
    ValidationRule("date", lambda v: parse_date(v) is not None, "Invalid date format"),
    ValidationRule("currency", _pattern(CURRENCY_RE), "Invalid currency format", Severity.WARN),
)

DEFAULT_TRANSFORMERS: tuple[TransformRule, ...] = (
    TransformRule("trim", lambda v: v.strip() if isinstance(v, str) else v),
    TransformRule("normalize_email", lambda v: v.strip().lower() if isinstance(v, str) else v),
    TransformRule("normalize_phone", lambda v: re.sub(r"[^\d\+]", "", v) if isinstance(v, str) else v),
    TransformRule("capitalize_name", _capitalize),
    TransformRule("parse_date", _parse_date_text),
)


@dataclass
class ValidationStep:
    field: str
    rule: str


@dataclass
class TransformStep:
    field: str
    transform: str


PlanStep = Union[ValidationStep, TransformStep]


# ---------------------------------------------------------------------------
# Profiling
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        match = re.match(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?", value)
        if match:
            number = float(match.group(0))
            return number if math.isfinite(number) else None
    return None


def detect_data_types(values: Sequence[Any]) -> dict[str, int]:
    """Count values per detected type; specialised string types are exclusive."""
    counts = dict.fromkeys(("string", "number", "boolean", "date", "email", "phone", "url"), 0)
    for value in values:
        if isinstance(value, bool):
            counts["boolean"] += 1
        elif _is_number(value):
            counts["number"] += 1
        elif isinstance(value, str):
            counts["string"] += 1
            if EMAIL_RE.match(value):
                counts["email"] += 1
            elif PHONE_RE.match(value):
                counts["phone"] += 1
            elif URL_RE.match(value):
                counts["url"] += 1
            elif parse_date(value) is not None:
                counts["date"] += 1
    return counts


def detect_patterns(values: Sequence[Any]) -> dict[str, dict[str, float]]:
    sample = list(values[:PATTERN_SAMPLE_SIZE])
    patterns: dict[str, dict[str, float]] = {}
    for name, regex in COMMON_PATTERNS.items():
        matches = sum(1 for v in sample if isinstance(v, str) and regex.match(v))
        if matches:
            patterns[name] = {"matches": matches, "percentage": matches / len(sample) * 100}
    return patterns


def numeric_statistics(values: Sequence[Any]) -> dict[str, Any]:
    numbers = sorted(n for n in (_numeric(v) for v in values) if n is not None)
    if not numbers:
        return {
            "type": "non-numeric", "min": None, "max": None,
            "mean": None, "median": None, "standard_deviation": None,
        }
    return {
        "type": "numeric",
        "min": numbers[0],
        "max": numbers[-1],
        "mean": stats.fmean(numbers),
        "median": numbers[len(numbers) // 2],
        "standard_deviation": stats.pstdev(numbers),
        "count": len(numbers),
    }


@dataclass
class FieldProfile:
    field: str
    total_values: int
    null_count: int
    null_rate: float
    unique_count: int
    data_types: dict[str, int]
    patterns: dict[str, dict[str, float]]
    statistics: dict[str, Any]

    @property
    def dominant_type(self) -> str:
        """Most specific type covering the majority of non-null values."""
        if not self.total_values:
            return "string"
        for name in ("email", "phone", "url", "date", "boolean", "number"):
            if self.data_types.get(name, 0) * 2 > self.total_values:
                return name
        return "string"


def profile_records(records: Sequence[Mapping[str, Any]]) -> dict[str, FieldProfile]:
    """Profile every field seen in the first records of the dataset."""
    if not records:
        return {}
    sample = list(records[:PROFILE_SAMPLE_SIZE])
    fields: dict[str, None] = {}
    for record in sample:
        fields.update(dict.fromkeys(record))

    profiles: dict[str, FieldProfile] = {}
    for name in fields:
        values = [r.get(name) for r in sample]
        present = [v for v in values if not is_empty_value(v)]
        null_count = len(sample) - len(present)
        profiles[name] = FieldProfile(
            field=name,
            total_values=len(present),
            null_count=null_count,
            null_rate=null_count / len(sample) * 100,
            unique_count=len({str(v) for v in present}),
            data_types=detect_data_types(present),
            patterns=detect_patterns(present),
            statistics=numeric_statistics(present),
        )
    return profiles


def detect_column_types(records: Sequence[Mapping[str, Any]]) -> dict[str, str]:
    """``field → dominant type`` from :func:`profile_records`."""
    return {name: p.dominant_type for name, p in profile_records(records).items()}


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class Violation:
    rule: str
    field: str
    value: Any
    record_index: int
    message: str
    severity: Severity

    def to_issue(self) -> Issue:
        return Issue(
            kind=InvalidProperty.kind,
            severity=self.severity,
            message=f"{self.field}: {self.message}",
            record_index=self.record_index,
            field=self.field,
        )


@dataclass
class ValidationReport:
    """Outcome of validating a dataset."""
    total_records: int
    valid_records: int
    violations: list[Violation] = field(default_factory=list)
    field_profiles: dict[str, FieldProfile] = field(default_factory=dict)

    @property
    def invalid_records(self) -> int:
        return self.total_records - self.valid_records

    @property
    def validity_rate(self) -> float:
        return self.valid_records / self.total_records * 100 if self.total_records else 100.0

    @property
    def error_rate(self) -> float:
        return self.invalid_records / self.total_records * 100 if self.total_records else 0.0

    @property
    def errors(self) -> list[Violation]:
        return [v for v in self.violations if v.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity is Severity.WARN]

    @property
    def quality_score(self) -> float:
        return max(0.0, min(100.0, self.validity_rate - 0.5 * self.error_rate))

    def field_summary(self) -> dict[str, dict[str, int]]:
        summary: dict[str, dict[str, int]] = {}
        for v in self.violations:
            counts = summary.setdefault(v.field, {"errors": 0, "warnings": 0})
            counts["errors" if v.severity is Severity.ERROR else "warnings"] += 1
        return summary

    def record_summary(self) -> dict[int, dict[str, int]]:
        summary: dict[int, dict[str, int]] = {}
        for v in self.violations:
            counts = summary.setdefault(v.record_index, {"errors": 0, "warnings": 0})
            counts["errors" if v.severity is Severity.ERROR else "warnings"] += 1
        return summary

    def top_issues(self, limit: int = TOP_ISSUES) -> list[tuple[str, int]]:
        """Most frequent ``rule:field`` error combinations."""
        counts = Counter(f"{v.rule}:{v.field}" for v in self.errors)
        return counts.most_common(limit)

    def recommendations(self) -> list[dict[str, str]]:
        recs: list[dict[str, str]] = []
        if self.error_rate > HIGH_ERROR_RATE:
            recs.append({
                "type": "high_error_rate",
                "message": "High error rate detected. Consider reviewing data source quality.",
                "priority": "high",
            })
        for name, profile in self.field_profiles.items():
            if profile.null_rate > HIGH_NULL_RATE:
                recs.append({
                    "type": "high_null_rate",
                    "field": name,
                    "message": f"Field {name} has high null rate ({profile.null_rate:.1f}%)",
                    "priority": "medium",
                })
        return recs

    def issues(self) -> list[Issue]:
        return [v.to_issue() for v in self.violations]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "validity_rate": self.validity_rate,
            "error_rate": self.error_rate,
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
            "quality_score": self.quality_score,
            "field_summary": self.field_summary(),
            "top_issues": [{"issue": k, "count": c} for k, c in self.top_issues()],
            "recommendations": self.recommendations(),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ValidationEngine:
    """Registry of validators and transformers plus plan execution.

    The built-in rules are registered at construction; callers add their
    own with :meth:`add_validator` and :meth:`add_transformer`.
    """

    def __init__(self) -> None:
        self._validators: dict[str, ValidationRule] = {r.name: r for r in DEFAULT_VALIDATORS}
        self._transformers: dict[str, TransformRule] = {r.name: r for r in DEFAULT_TRANSFORMERS}

    # -- Registry ------------------------------------------------------------

    def add_validator(self, rule: ValidationRule) -> None:
        self._validators[rule.name] = rule

    def add_transformer(self, rule: TransformRule) -> None:
        self._transformers[rule.name] = rule

    def remove_validator(self, name: str) -> bool:
        return self._validators.pop(name, None) is not None

    def remove_transformer(self, name: str) -> bool:
        return self._transformers.pop(name, None) is not None

    @property
    def validator_names(self) -> list[str]:
        return list(self._validators)

    @property
    def transformer_names(self) -> list[str]:
        return list(self._transformers)

    def _validator(self, name: str) -> ValidationRule:
        try:
            return self._validators[name]
        except KeyError:
            raise InvalidProperty(f"Unknown validator: {name!r}", rule=name) from None

    def _transformer(self, name: str) -> TransformRule:
        try:
            return self._transformers[name]
        except KeyError:
            raise InvalidProperty(f"Unknown transformer: {name!r}", rule=name) from None

    def check_plan(self, plan: Sequence[PlanStep]) -> None:
        """Raise ``InvalidProperty`` if a step names an unregistered rule."""
        for step in plan:
            name = step.transform if isinstance(step, TransformStep) else step.rule
            known = self._transformers if isinstance(step, TransformStep) else self._validators
            if name not in known:
                kind = "transformer" if isinstance(step, TransformStep) else "validator"
                raise InvalidProperty(
                    f"Unknown {kind} {name!r} for field {step.field!r}",
                    rule=name, field=step.field,
                )

    # -- Execution -----------------------------------------------------------

    def check(self, rule_name: str, value: Any) -> bool:
        rule = self._validator(rule_name)
        if is_empty_value(value) and not rule.applies_to_empty:
            return True
        return bool(rule.check(value))

    def transform(self, name: str, value: Any) -> Any:
        return self._transformer(name).transform(value)

    def apply(self, record: Mapping[str, Any], index: int, plan: Sequence[PlanStep]) -> tuple[Record, list[Violation]]:
        """Run the plan over one record; returns the rewritten copy and its violations.

        A transformer that raises leaves the value as it was and records
        an error violation.
        """
        out = dict(record)
        violations: list[Violation] = []
        for step in plan:
            if isinstance(step, TransformStep):
                if step.field in out:
                    transformer = self._transformer(step.transform)
                    try:
                        out[step.field] = transformer.transform(out[step.field])
                    except Exception as exc:
                        logger.debug("Transformer %s failed on record %d: %s", transformer.name, index, exc)
                        violations.append(Violation(
                            rule=transformer.name,
                            field=step.field,
                            value=out[step.field],
                            record_index=index,
                            message=f"Transformation error: {exc}",
                            severity=Severity.ERROR,
                        ))
                continue
            rule = self._validator(step.rule)
            value = out.get(step.field)
            try:
                ok = self.check(step.rule, value)
            except Exception as exc:
                ok, message = False, f"Validation rule error: {exc}"
            else:
                message = rule.message
            if not ok:
                violations.append(Violation(
                    rule=rule.name,
                    field=step.field,
                    value=value,
                    record_index=index,
                    message=message,
                    severity=rule.severity,
                ))
        return out, violations

    def run(
        self,
        records: Sequence[Mapping[str, Any]],
        plan: Sequence[PlanStep],
    ) -> tuple[list[Record], ValidationReport]:
        """Apply ``plan`` to every record and build the report.

        Raises ``InvalidProperty`` before touching any record when the
        plan names an unregistered rule.
        """
        self.check_plan(plan)
        transformed: list[Record] = []
        violations: list[Violation] = []
        valid = 0
        for index, record in enumerate(records):
            out, found = self.apply(record, index, plan)
            transformed.append(out)
            violations.extend(found)
            if not any(v.severity is Severity.ERROR for v in found):
                valid += 1
        report = ValidationReport(
            total_records=len(records),
            valid_records=valid,
            violations=violations,
            field_profiles=profile_records(transformed),
        )
        logger.info(
            "Validated %d records: %d errors, %d warnings, quality %.1f",
            report.total_records, len(report.errors), len(report.warnings), report.quality_score,
        )
        return transformed, report
