from typing import List, Optional, Sequence

from app.features.scan.services.audit.dom_snapshot import DomSnapshot
from app.features.scan.services.audit.rules import RULES, AuditRule, ViolationRecord
from app.platform.logger import get_logger

logger = get_logger(__name__)

__all__ = ["PageAuditor", "ViolationRecord", "audit"]


class PageAuditor:
    """
    Runs the rule catalog over one page snapshot.

    audit() never raises: a rule that fails on a single element skips that
    element (handled inside AuditRule.evaluate), and a rule that fails as a
    whole is skipped and logged.
    """

    def __init__(self, rules: Optional[Sequence[AuditRule]] = None):
        self.rules = list(RULES if rules is None else rules)

    def audit(self, snapshot: DomSnapshot) -> List[ViolationRecord]:
        violations: List[ViolationRecord] = []
        for rule in self.rules:
            try:
                found = rule.evaluate(snapshot)
            except Exception as e:
                logger.error(f"Rule {rule.name} skipped on {snapshot.url}: {e}")
                continue
            violations.extend(found)

        logger.info(
            f"Audited {snapshot.url}: {len(snapshot)} elements, {len(violations)} violations"
        )
        return violations


_default_auditor = PageAuditor()


def audit(snapshot: DomSnapshot) -> List[ViolationRecord]:
    return _default_auditor.audit(snapshot)
