"""In-app notifications for loan lifecycle events"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from jamii_loans.domain.exceptions import NotFoundError
from jamii_loans.domain.models import NotificationType
from jamii_loans.infrastructure.database.models import Notification
from jamii_loans.infrastructure.database.repositories import NotificationRepository

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates notifications after a ledger transition has been committed"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def create(
        self,
        user_id: uuid.UUID,
        loan_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        once: bool = False,
    ) -> Optional[Notification]:
        """
        Best-effort notification.

        A failure is logged and rolled back on its own; the transition that
        triggered it is already committed and stays that way. With once=True a
        second notification of the same type for the same loan is skipped; the
        unique index on lifecycle types settles writers that race past exists().
        """
        try:
            if once and self.repo.exists(loan_id, type.value):
                return None
            notification = self.repo.create(
                user_id=user_id,
                loan_id=loan_id,
                type=type.value,
                title=title,
                message=message,
                extra=metadata or {},
            )
            self.db.commit()
            return notification
        except SQLAlchemyError as e:
            self.db.rollback()
            if once and isinstance(e, IntegrityError):
                logger.info(
                    f"{type.value} notification already sent",
                    extra={"loan_id": str(loan_id), "user_id": str(user_id)},
                )
                return None
            logger.error(
                f"Failed to create {type.value} notification: {e}",
                extra={"loan_id": str(loan_id), "user_id": str(user_id)},
            )
            return None

    def exists(self, loan_id: uuid.UUID, type: NotificationType) -> bool:
        return self.repo.exists(loan_id, type.value)

    def list_for_user(self, user_id: uuid.UUID) -> List[Notification]:
        return self.repo.for_user(user_id)

    def mark_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> None:
        if not self.repo.mark_read(notification_id, user_id):
            self.db.rollback()
            raise NotFoundError("Notification not found")
        self.db.commit()
