from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, Enum
from sqlalchemy.orm import relationship
import enum

from app.platform.db.base import BaseModel


class ScanJobStatus(enum.Enum):
    """Work queue lifecycle: pending -> claimed -> processing -> done | failed"""
    pending = "pending"
    claimed = "claimed"
    processing = "processing"
    done = "done"
    failed = "failed"


TERMINAL_JOB_STATUSES = frozenset({ScanJobStatus.done, ScanJobStatus.failed})
ACTIVE_JOB_STATUSES = frozenset({ScanJobStatus.claimed, ScanJobStatus.processing})


class ScanJob(BaseModel):
    """
    One unit of work in the scan queue.

    Exactly one ScanJob exists per Scan. A job may be claimed several times
    (retries) but attempts only ever goes up, and it is dead-lettered once
    attempts reaches max_attempts.
    """
    __tablename__ = "scan_jobs"

    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    scan = relationship("Scan", back_populates="job", lazy="select")

    url = Column(String(2048), nullable=False)
    tier = Column(String(32), nullable=False)
    depth = Column(String(16), nullable=False, default="standard")

    # Higher number is served first; ties are FIFO on created_at
    priority = Column(Integer, nullable=False, default=0)

    status = Column(Enum(ScanJobStatus), default=ScanJobStatus.pending, nullable=False, index=True)

    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)

    worker_id = Column(String(255), nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_scan_jobs_queue', 'status', 'priority', 'created_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_dead_lettered(self) -> bool:
        return self.status == ScanJobStatus.failed and self.attempts >= self.max_attempts
