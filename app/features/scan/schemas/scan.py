"""
Scan Schemas

Request and response models for the scan API endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ScanCreateRequest(BaseModel):
    """Request to queue an accessibility scan."""
    url: str = Field(..., min_length=1, max_length=2048)
    organization_id: str = Field(..., min_length=1, max_length=255)
    tier: Literal["free", "starter", "pro", "enterprise"] = "free"
    depth: Literal["quick", "standard", "deep"] = "standard"

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com",
                "organization_id": "org_123",
                "tier": "starter",
                "depth": "standard",
            }
        }


class ScanCreateResponse(BaseModel):
    scan_id: str
    job_id: str
    estimated_time: int  # seconds


class ScanStatusResponse(BaseModel):
    scan_id: str
    job_id: Optional[str] = None
    status: str
    progress_percent: int
    message: str
    elapsed_seconds: int
    pages_scanned: int = 0
    pages_discovered: Optional[int] = None
    current_page: Optional[str] = None
    attempts: Optional[int] = None
    job_status: Optional[str] = None
    error: Optional[str] = None


class ViolationResponse(BaseModel):
    id: str
    wcag_criterion: str
    severity: str
    element_type: Optional[str] = None
    element_selector: Optional[str] = None
    element_snippet: Optional[str] = None
    page_url: str
    user_impact: str
    business_impact: Optional[str] = None
    legal_risk: str
    fix_description: str
    fix_snippet: Optional[str] = None
    fix_effort: Optional[str] = None
    estimated_fix_effort: Optional[str] = None
    quick_win: bool = False


class ScanResultsResponse(BaseModel):
    scan_id: str
    url: str
    tier: str
    depth: str
    wcag_score: Optional[int] = None
    risk_score: Optional[int] = None
    lawsuit_probability: Optional[float] = None
    pages_scanned: int = 0
    processing_time_ms: Optional[int] = None
    completed_at: Optional[datetime] = None
    violation_counts: Dict[str, int]
    summary: Dict[str, Any]
    violations: List[ViolationResponse]


class ScanDeleteResponse(BaseModel):
    scan_id: str
    deleted_violations: int
