"""
Tests for scan scoring
"""
import random

import pytest

from app.features.scan.services.audit.rules import ViolationRecord
from app.features.scan.services.scoring.scoring_engine import (
    format_fix_time,
    lawsuit_probability,
    risk_score,
    score,
    top_issues,
    wcag_score,
)


def violation(severity="serious", criterion="1.4.3", legal_risk="medium", impact="Impact",
              effort="easy", estimate="15 minutes"):
    return ViolationRecord(
        wcag_criterion=criterion,
        severity=severity,
        element_type="text",
        element_selector="p",
        element_snippet="<p></p>",
        page_url="https://example.com/",
        user_impact=impact,
        business_impact="",
        legal_risk=legal_risk,
        fix_description="",
        fix_snippet="",
        fix_effort=effort,
        estimated_fix_effort=estimate,
    )


class TestScores:

    def test_no_violations(self):
        result = score([])
        assert (result.wcag_score, result.risk_score, result.lawsuit_probability) == (100, 0, 5)
        assert result.summary["total_violations"] == 0
        assert result.summary["estimated_fix_time"] == "0 minutes"
        assert result.summary["top_issues"] == []

    def test_severity_weights(self):
        violations = [
            violation("critical"), violation("serious"), violation("moderate"), violation("minor"),
        ]
        assert wcag_score(violations) == 100 - 15 - 8 - 3 - 1

    def test_wcag_score_floors_at_zero(self):
        assert wcag_score([violation("critical")] * 10) == 0

    def test_risk_score(self):
        violations = [violation("critical", legal_risk="high"), violation("minor", legal_risk="low")]
        assert risk_score(violations) == 20 + 15 + 2 * 2

    def test_risk_score_caps_at_100(self):
        assert risk_score([violation("critical", legal_risk="high")] * 5) == 100

    def test_lawsuit_probability(self):
        violations = [violation(criterion="1.1.1"), violation(criterion="2.4.4")]
        assert lawsuit_probability(violations) == 17
        assert lawsuit_probability([violation(criterion="2.1.1")] * 20) == 85

    def test_adding_a_violation_never_improves_scores(self):
        base = [violation("serious", criterion="1.1.1", legal_risk="high")]
        for extra in (violation("minor"), violation("critical", criterion="2.1.1", legal_risk="high")):
            before, after = score(base), score(base + [extra])
            assert after.wcag_score <= before.wcag_score
            assert after.risk_score >= before.risk_score
            assert after.lawsuit_probability >= before.lawsuit_probability

    def test_order_does_not_matter(self):
        violations = [
            violation("critical", criterion="1.1.1", impact="Images"),
            violation("serious", criterion="1.4.3", impact="Contrast"),
            violation("moderate", criterion="1.3.1", impact="Headings"),
            violation("serious", criterion="1.4.3", impact="Contrast"),
        ]
        shuffled = list(violations)
        random.Random(7).shuffle(shuffled)
        assert score(shuffled) == score(violations)


class TestSummary:

    def test_counts(self):
        violations = [
            violation("critical", criterion="1.1.1", effort="trivial", estimate="2 minutes"),
            violation("serious", criterion="1.4.3", effort="easy"),
            violation("serious", criterion="1.4.3", effort="moderate", estimate="1 hour"),
        ]
        summary = score(violations).summary

        assert summary["by_severity"] == {"critical": 1, "serious": 2, "moderate": 0, "minor": 0}
        assert summary["by_criterion"] == {"1.1.1": 1, "1.4.3": 2}
        assert summary["estimated_fix_minutes"] == 2 + 15 + 60
        assert summary["estimated_fix_time"] == "1 hours"
        assert summary["quick_wins"] == 2

    def test_unknown_estimate_counts_thirty_minutes(self):
        assert score([violation(estimate="a while")]).summary["estimated_fix_minutes"] == 30

    @pytest.mark.parametrize("minutes,expected", [
        (0, "0 minutes"),
        (59, "59 minutes"),
        (60, "1 hours"),
        (150, "2 hours"),
        (479, "8 hours"),
        (480, "1 days"),
        (1500, "3 days"),
    ])
    def test_fix_time_format(self, minutes, expected):
        assert format_fix_time(minutes) == expected

    def test_top_issues_by_frequency_then_name(self):
        violations = (
            [violation(impact="Contrast")] * 3
            + [violation(impact="Labels")] * 2
            + [violation(impact="Alt text")] * 2
            + [violation(impact=name) for name in ("Zoom", "Focus", "Order")]
        )
        assert top_issues(violations) == ["Contrast", "Alt text", "Labels", "Focus", "Order"]
