"""
Scan models package.
"""
from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_job import ScanJob, ScanJobStatus
from app.features.scan.models.violation import Violation, ViolationSeverity, LegalRisk
from app.features.scan.models.worker_heartbeat import WorkerHeartbeat

__all__ = [
    "Scan",
    "ScanStatus",
    "ScanJob",
    "ScanJobStatus",
    "Violation",
    "ViolationSeverity",
    "LegalRisk",
    "WorkerHeartbeat",
]
