"""
Activity Service - Best-effort audit trail for review actions
"""
import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reviewflow.db.models import Activity

logger = logging.getLogger(__name__)

ACTIVITY_WRITE_FAILURES = Counter(
    'activity_write_failures_total',
    'Audit records that could not be written',
    ['activity_type']
)


class ActivityType:
    REPLY_DRAFTED = "reply_drafted"
    REPLY_APPROVED = "reply_approved"
    REPLY_POSTED = "reply_posted"
    REPLY_RECONCILED = "reply_reconciled"
    REPLY_UPDATED = "reply_updated"
    REPLY_AUTO_APPROVED = "reply_auto_approved"


class ActivityRecorder:
    """
    Appends audit records. A failed write is logged and counted but never
    raised, so it cannot undo the action being recorded.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        business_id: str,
        activity_type: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            self.db.add(Activity(
                business_id=business_id,
                type=activity_type,
                description=description,
                activity_metadata=metadata or {},
            ))
            self.db.commit()
            return True
        except Exception as e:
            logger.error(
                f"Failed to record {activity_type} activity for business {business_id}: {e}",
                exc_info=True,
                extra={"business_id": business_id},
            )
            ACTIVITY_WRITE_FAILURES.labels(activity_type=activity_type).inc()
            try:
                self.db.rollback()
            except SQLAlchemyError as rollback_error:
                logger.error(f"Rollback after failed activity write also failed: {rollback_error}")
            return False
