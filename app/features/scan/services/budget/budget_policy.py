"""
Per-tier crawl budgets and queue priorities.

Pure lookups, no state. A scan's budget is the tier budget narrowed by the
requested depth (quick / standard / deep).
"""
from dataclasses import dataclass
from typing import Dict

from app.platform.exceptions import ValidationError


@dataclass(frozen=True)
class CrawlBudget:
    max_pages: int
    max_depth: int
    max_time_ms: int

    @property
    def max_time_seconds(self) -> float:
        return self.max_time_ms / 1000.0


TIER_BUDGETS: Dict[str, CrawlBudget] = {
    "free": CrawlBudget(max_pages=5, max_depth=1, max_time_ms=120_000),  # 2 minutes
    "starter": CrawlBudget(max_pages=15, max_depth=2, max_time_ms=180_000),  # 3 minutes
    "pro": CrawlBudget(max_pages=50, max_depth=3, max_time_ms=300_000),  # 5 minutes
    "enterprise": CrawlBudget(max_pages=500, max_depth=5, max_time_ms=600_000),  # 10 minutes
}

# Higher number is served first
TIER_PRIORITIES: Dict[str, int] = {
    "free": 1,
    "starter": 3,
    "pro": 5,
    "enterprise": 10,
}

SCAN_DEPTHS = ("quick", "standard", "deep")

# Rough seconds per page, used only for the estimate returned on enqueue
_SECONDS_PER_PAGE = {"quick": 3, "standard": 5, "deep": 8}


def validate_tier(tier: str) -> str:
    normalized = (tier or "").strip().lower()
    if normalized not in TIER_BUDGETS:
        raise ValidationError(
            f"Unknown tier '{tier}'. Expected one of: {', '.join(TIER_BUDGETS)}"
        )
    return normalized


def validate_depth(depth: str) -> str:
    normalized = (depth or "").strip().lower()
    if normalized not in SCAN_DEPTHS:
        raise ValidationError(
            f"Unknown scan depth '{depth}'. Expected one of: {', '.join(SCAN_DEPTHS)}"
        )
    return normalized


def budget_for_tier(tier: str) -> CrawlBudget:
    return TIER_BUDGETS[validate_tier(tier)]


def budget_for(tier: str, depth: str = "deep") -> CrawlBudget:
    """
    Effective crawl budget for a tier and requested depth.

    quick    -> only the start page
    standard -> half the tier's pages (at least one), tier depth
    deep     -> the full tier budget
    """
    base = budget_for_tier(tier)
    depth = validate_depth(depth)

    if depth == "quick":
        return CrawlBudget(max_pages=1, max_depth=0, max_time_ms=base.max_time_ms)
    if depth == "standard":
        return CrawlBudget(
            max_pages=max(1, base.max_pages // 2),
            max_depth=base.max_depth,
            max_time_ms=base.max_time_ms,
        )
    return base


def priority_for_tier(tier: str) -> int:
    return TIER_PRIORITIES[validate_tier(tier)]


def estimate_scan_seconds(tier: str, depth: str) -> int:
    """Upper-bound guess shown to the client, never above the time budget."""
    budget = budget_for(tier, depth)
    guess = budget.max_pages * _SECONDS_PER_PAGE[validate_depth(depth)] + 10
    return int(min(guess, budget.max_time_seconds))
