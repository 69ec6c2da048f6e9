"""Tests for casegraph.ingest.validation.

Tests cover:
  - Built-in validators and transformers, empty-value handling
  - Plan execution with per-record violations and severities
  - Report rates, quality score, summaries and recommendations
  - Field profiling and dominant type detection
"""

import math

import pytest

from casegraph.errors import InvalidProperty
from casegraph.ingest.issues import Severity
from casegraph.ingest.validation import (
    TransformRule,
    TransformStep,
    ValidationEngine,
    ValidationRule,
    ValidationStep,
    detect_column_types,
    numeric_statistics,
    profile_records,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> ValidationEngine:
    return ValidationEngine()


@pytest.fixture
def contacts() -> list[dict]:
    return [
        {"name": "Alice", "email": "a@x.org", "phone": "5551234567"},
        {"name": "", "email": "bad", "phone": "12-34"},
        {"name": "Carl", "email": "", "phone": ""},
        {"name": "Dana", "email": "d@x.org", "phone": "abc"},
    ]


@pytest.fixture
def plan() -> list:
    return [
        ValidationStep("name", "required"),
        ValidationStep("email", "email"),
        ValidationStep("phone", "phone"),
    ]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRules:
    @pytest.mark.parametrize("rule, value, expected", [
        ("required", "", False),
        ("required", "x", True),
        ("email", "a@b.co", True),
        ("email", "bad", False),
        ("email", "", True),
        ("phone", "+15551234567", True),
        ("phone", "555-123", False),
        ("date", "2024-01-15", True),
        ("date", "yesterday", False),
        ("currency", "$12.50", True),
        ("currency", "12.505", False),
    ])
    def test_check(self, engine, rule, value, expected):
        assert engine.check(rule, value) is expected

    @pytest.mark.parametrize("name, value, expected", [
        ("trim", "  Alice ", "Alice"),
        ("normalize_email", " Alice@Example.ORG ", "alice@example.org"),
        ("normalize_phone", "(555) 123-4567", "5551234567"),
        ("capitalize_name", "jOHN smith", "John Smith"),
        ("parse_date", "2024/03/01", "2024-03-01"),
        ("parse_date", "someday", "someday"),
        ("trim", 42, 42),
    ])
    def test_transform(self, engine, name, value, expected):
        assert engine.transform(name, value) == expected

    def test_unknown_names(self, engine):
        with pytest.raises(InvalidProperty):
            engine.check("postcode", "x")
        with pytest.raises(InvalidProperty):
            engine.transform("slug", "x")

    def test_unknown_plan_step_rejected_before_run(self, engine):
        with pytest.raises(InvalidProperty) as excinfo:
            engine.run([{"a": 1}], [TransformStep("a", "trim"), ValidationStep("a", "postcode")])
        assert excinfo.value.kind == "InvalidProperty"
        assert excinfo.value.details == {"rule": "postcode", "field": "a"}
        with pytest.raises(InvalidProperty, match="transformer"):
            engine.check_plan([TransformStep("a", "slug")])
        engine.check_plan([TransformStep("a", "trim"), ValidationStep("a", "email")])

    def test_failing_transformer_becomes_violation(self, engine):
        engine.add_transformer(TransformRule("halve", lambda v: v / 2))
        records, report = engine.run([{"n": "x"}, {"n": 4}], [TransformStep("n", "halve")])
        assert records == [{"n": "x"}, {"n": 2}]
        assert report.valid_records == 1
        assert report.errors[0].record_index == 0
        assert report.errors[0].message.startswith("Transformation error")

    def test_registry(self, engine):
        engine.add_validator(ValidationRule("short", lambda v: len(v) < 5, "Too long"))
        engine.add_transformer(TransformRule("upper", str.upper))
        assert "short" in engine.validator_names
        assert engine.transform("upper", "ab") == "AB"
        assert engine.remove_validator("short") is True
        assert engine.remove_validator("short") is False

    def test_failing_rule_becomes_violation(self, engine):
        engine.add_validator(ValidationRule("positive", lambda v: v > 0, "Must be positive"))
        _, report = engine.run([{"n": "x"}], [ValidationStep("n", "positive")])
        assert len(report.errors) == 1
        assert report.errors[0].message.startswith("Validation rule error")


# ---------------------------------------------------------------------------
# Plans and reports
# ---------------------------------------------------------------------------


class TestReport:
    def test_transforms_run_before_later_checks(self, engine):
        records, report = engine.run(
            [{"email": " A@X.ORG "}],
            [TransformStep("email", "normalize_email"), ValidationStep("email", "email")],
        )
        assert records == [{"email": "a@x.org"}]
        assert report.violations == []

    def test_missing_fields_are_not_added(self, engine):
        records, _ = engine.run([{"name": "a"}], [TransformStep("email", "trim")])
        assert records == [{"name": "a"}]

    def test_input_records_untouched(self, engine):
        source = [{"name": " a "}]
        engine.run(source, [TransformStep("name", "trim")])
        assert source == [{"name": " a "}]

    def test_rates_and_score(self, engine, contacts, plan):
        _, report = engine.run(contacts, plan)
        assert report.total_records == 4
        assert report.valid_records == 3
        assert report.invalid_records == 1
        assert report.validity_rate == pytest.approx(75.0)
        assert report.error_rate == pytest.approx(25.0)
        assert report.quality_score == pytest.approx(62.5)
        assert len(report.errors) == 2
        assert len(report.warnings) == 2

    def test_summaries(self, engine, contacts, plan):
        _, report = engine.run(contacts, plan)
        assert report.field_summary() == {
            "name": {"errors": 1, "warnings": 0},
            "email": {"errors": 1, "warnings": 0},
            "phone": {"errors": 0, "warnings": 2},
        }
        assert report.record_summary() == {
            1: {"errors": 2, "warnings": 1},
            3: {"errors": 0, "warnings": 1},
        }
        assert set(report.top_issues()) == {("required:name", 1), ("email:email", 1)}

    def test_issues(self, engine, contacts, plan):
        _, report = engine.run(contacts, plan)
        issues = report.issues()
        assert len(issues) == 4
        assert all(i.kind == "InvalidProperty" for i in issues)
        assert issues[0].message == "name: Field is required"
        assert issues[0].record_index == 1
        assert issues[2].severity is Severity.WARN

    def test_recommendations(self, engine, contacts, plan):
        _, report = engine.run(contacts, plan)
        assert [r["type"] for r in report.recommendations()] == ["high_error_rate"]

    def test_high_null_rate(self, engine):
        _, report = engine.run([{"a": "x", "b": ""}, {"a": "y", "b": None}], [])
        recs = report.recommendations()
        assert recs == [{
            "type": "high_null_rate",
            "field": "b",
            "message": "Field b has high null rate (100.0%)",
            "priority": "medium",
        }]

    def test_empty_dataset(self, engine, plan):
        records, report = engine.run([], plan)
        assert records == []
        assert report.validity_rate == 100.0
        assert report.quality_score == 100.0

    def test_to_dict(self, engine, contacts, plan):
        _, report = engine.run(contacts, plan)
        data = report.to_dict()
        assert set(data) == {
            "total_records", "valid_records", "invalid_records", "validity_rate",
            "error_rate", "total_errors", "total_warnings", "quality_score",
            "field_summary", "top_issues", "recommendations",
        }
        assert data["total_warnings"] == 2


# ---------------------------------------------------------------------------
# Profiling
# ---------------------------------------------------------------------------


class TestProfiling:
    def test_profile(self, contacts):
        profiles = profile_records(contacts)
        assert list(profiles) == ["name", "email", "phone"]
        email = profiles["email"]
        assert email.null_count == 1
        assert email.null_rate == pytest.approx(25.0)
        assert email.unique_count == 3
        assert email.dominant_type == "email"
        assert profiles["phone"].dominant_type == "string"

    def test_detect_column_types(self):
        types = detect_column_types([
            {"age": 30, "joined": "2020-01-01", "active": True},
            {"age": 41, "joined": "2021-06-30", "active": False},
        ])
        assert types == {"age": "number", "joined": "date", "active": "boolean"}

    def test_numeric_statistics(self):
        result = numeric_statistics([1, "2", "x", 3])
        assert result["type"] == "numeric"
        assert (result["min"], result["max"], result["median"]) == (1.0, 3.0, 2.0)
        assert result["mean"] == pytest.approx(2.0)
        assert result["standard_deviation"] == pytest.approx(math.sqrt(2 / 3))
        assert result["count"] == 3

    def test_non_numeric_statistics(self):
        assert numeric_statistics(["a", "b"])["type"] == "non-numeric"

    def test_empty(self):
        assert profile_records([]) == {}
