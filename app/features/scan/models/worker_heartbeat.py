from sqlalchemy import Column, String, Integer, DateTime

from app.platform.db.base import BaseModel


class WorkerHeartbeat(BaseModel):
    """Last sign of life from each queue worker, upserted every poll."""
    __tablename__ = "worker_heartbeats"

    worker_id = Column(String(255), nullable=False, unique=True, index=True)
    last_heartbeat = Column(DateTime, nullable=False)
    status = Column(String(32), default="active", nullable=False)
    jobs_processed = Column(Integer, default=0, nullable=False)
    last_job_at = Column(DateTime, nullable=True)
