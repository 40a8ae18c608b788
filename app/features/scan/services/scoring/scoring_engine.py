"""
Scan scoring.

Pure functions of the violation list: the same violations (in any order)
always produce the same ScoreResult.
"""
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from app.features.scan.services.audit.rules import ViolationRecord

SEVERITY_WEIGHTS = {"critical": 15, "serious": 8, "moderate": 3, "minor": 1}

# Criteria most often cited in ADA web accessibility complaints
LITIGATED_CRITERIA = {"1.1.1", "2.1.1", "3.3.2", "1.4.3", "4.1.2"}

FIX_TIME_MINUTES = {
    "2 minutes": 2,
    "3 minutes": 3,
    "5 minutes": 5,
    "10 minutes": 10,
    "15 minutes": 15,
    "30 minutes": 30,
    "1 hour": 60,
    "2 hours": 120,
}
DEFAULT_FIX_MINUTES = 30
WORKDAY_MINUTES = 480

TOP_ISSUE_COUNT = 5


@dataclass
class ScoreResult:
    wcag_score: int
    risk_score: int
    lawsuit_probability: int
    summary: Dict[str, Any] = field(default_factory=dict)


def wcag_score(violations: Sequence[ViolationRecord]) -> int:
    penalty = sum(SEVERITY_WEIGHTS.get(v.severity, 0) for v in violations)
    return max(0, 100 - penalty)


def risk_score(violations: Sequence[ViolationRecord]) -> int:
    high_risk = sum(1 for v in violations if v.legal_risk == "high")
    critical = sum(1 for v in violations if v.severity == "critical")
    return min(100, high_risk * 20 + critical * 15 + len(violations) * 2)


def lawsuit_probability(violations: Sequence[ViolationRecord]) -> int:
    litigated = sum(1 for v in violations if v.wcag_criterion in LITIGATED_CRITERIA)
    return min(85, 5 + litigated * 12)


def estimated_fix_minutes(violations: Sequence[ViolationRecord]) -> int:
    return sum(FIX_TIME_MINUTES.get(v.estimated_fix_effort, DEFAULT_FIX_MINUTES) for v in violations)


def format_fix_time(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes < WORKDAY_MINUTES:
        return f"{round(minutes / 60)} hours"
    return f"{round(minutes / WORKDAY_MINUTES)} days"


def top_issues(violations: Sequence[ViolationRecord], limit: int = TOP_ISSUE_COUNT) -> List[str]:
    counts = Counter(v.user_impact for v in violations)
    # Most frequent first; ties broken alphabetically so the order is stable
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [issue for issue, _count in ranked[:limit]]


def score(violations: Sequence[ViolationRecord]) -> ScoreResult:
    by_severity = {severity: 0 for severity in SEVERITY_WEIGHTS}
    for v in violations:
        if v.severity in by_severity:
            by_severity[v.severity] += 1

    by_criterion = dict(sorted(Counter(v.wcag_criterion for v in violations).items()))
    minutes = estimated_fix_minutes(violations)

    summary = {
        "total_violations": len(violations),
        "by_severity": by_severity,
        "by_criterion": by_criterion,
        "estimated_fix_minutes": minutes,
        "estimated_fix_time": format_fix_time(minutes),
        "quick_wins": sum(1 for v in violations if v.quick_win),
        "top_issues": top_issues(violations),
    }

    return ScoreResult(
        wcag_score=wcag_score(violations),
        risk_score=risk_score(violations),
        lawsuit_probability=lawsuit_probability(violations),
        summary=summary,
    )
