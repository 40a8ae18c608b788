from sqlalchemy import Column, String, Integer, Float, DateTime, Text, Index, Enum, JSON
from sqlalchemy.orm import relationship
import enum

from app.platform.db.base import BaseModel


class ScanStatus(enum.Enum):
    """Scan state machine, driven by the ScanCoordinator"""
    queued = "queued"
    starting = "starting"
    crawling = "crawling"
    analyzing = "analyzing"
    generating_report = "generating_report"
    completed = "completed"
    failed = "failed"


TERMINAL_SCAN_STATUSES = frozenset({ScanStatus.completed, ScanStatus.failed})


class Scan(BaseModel):
    """
    A requested accessibility audit of one site.

    Owned by the organization that requested it. Score fields stay empty until
    the scan completes; deleting a Scan removes its job and violations.
    """
    __tablename__ = "scans"

    url = Column(String(2048), nullable=False)
    domain = Column(String(255), nullable=False, index=True)
    org_id = Column(String, nullable=False, index=True)
    tier = Column(String(32), nullable=False)
    depth = Column(String(16), nullable=False, default="standard")

    status = Column(Enum(ScanStatus), default=ScanStatus.queued, nullable=False, index=True)

    # Scores
    wcag_score = Column(Integer, nullable=True)  # 0-100
    risk_score = Column(Integer, nullable=True)  # 0-100
    lawsuit_probability = Column(Float, nullable=True)  # percent, capped at 85

    # Violation counts (denormalized)
    total_violations = Column(Integer, default=0, nullable=False)
    critical_violations = Column(Integer, default=0, nullable=False)
    serious_violations = Column(Integer, default=0, nullable=False)
    moderate_violations = Column(Integer, default=0, nullable=False)
    minor_violations = Column(Integer, default=0, nullable=False)

    pages_scanned = Column(Integer, default=0, nullable=False)
    summary = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    job = relationship(
        "ScanJob", back_populates="scan", uselist=False,
        cascade="all, delete-orphan", passive_deletes=True,
    )
    violations = relationship(
        "Violation", back_populates="scan",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_scans_org_created', 'org_id', 'created_at'),
    )

    @property
    def violation_counts_by_severity(self) -> dict:
        return {
            "critical": self.critical_violations or 0,
            "serious": self.serious_violations or 0,
            "moderate": self.moderate_violations or 0,
            "minor": self.minor_violations or 0,
        }
