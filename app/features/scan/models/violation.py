from sqlalchemy import Column, String, Text, ForeignKey, Index, Enum, Boolean
from sqlalchemy.orm import relationship
import enum

from app.platform.db.base import BaseModel


class ViolationSeverity(enum.Enum):
    """Fixed per rule, never computed"""
    critical = "critical"
    serious = "serious"
    moderate = "moderate"
    minor = "minor"


class LegalRisk(enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


class Violation(BaseModel):
    """
    A single failing element found on one page of a scan.

    Written once by the scan coordinator from the page auditor's output and
    never updated afterwards.
    """
    __tablename__ = "violations"

    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)

    wcag_criterion = Column(String(16), nullable=False, index=True)
    severity = Column(Enum(ViolationSeverity), nullable=False, index=True)
    element_type = Column(String(64), nullable=True)

    element_selector = Column(String(512), nullable=True)
    element_snippet = Column(Text, nullable=True)
    page_url = Column(String(2048), nullable=False)

    user_impact = Column(Text, nullable=False)
    business_impact = Column(Text, nullable=True)
    legal_risk = Column(Enum(LegalRisk), nullable=False)

    fix_description = Column(Text, nullable=False)
    fix_snippet = Column(Text, nullable=True)
    fix_effort = Column(String(16), nullable=True)  # trivial | easy | moderate | complex
    estimated_fix_effort = Column(String(32), nullable=True)  # e.g. "5 minutes"
    quick_win = Column(Boolean, default=False, nullable=False)

    scan = relationship("Scan", back_populates="violations", lazy="select")

    __table_args__ = (
        Index('idx_violations_scan_severity', 'scan_id', 'severity'),
    )
