"""Unit tests for in-app notifications"""

import uuid
import pytest
from sqlalchemy.exc import OperationalError
from jamii_loans.domain.exceptions import NotFoundError
from jamii_loans.domain.models import NotificationType
from jamii_loans.services.notifications import NotificationService


@pytest.fixture
async def loan(ledger, borrower):
    return await ledger.apply(borrower.id, 10_000, "254708374149")


async def test_create_and_list(db, borrower, loan):
    service = NotificationService(db)

    created = service.create(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.PAYMENT_REMINDER,
        title="Payment Reminder",
        message="Your repayment is due in 3 days.",
        metadata={"amount": 10_000},
    )

    assert created is not None
    notifications = service.list_for_user(borrower.id)
    assert [n.type for n in notifications] == ["payment_reminder"]
    assert notifications[0].extra == {"amount": 10_000}
    assert notifications[0].is_read is False


async def test_create_once_skips_duplicates(db, borrower, loan):
    service = NotificationService(db)
    kwargs = dict(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.LOAN_DISBURSED,
        title="Loan Disbursed",
        message="Sent to M-PESA",
        once=True,
    )

    assert service.create(**kwargs) is not None
    assert service.create(**kwargs) is None
    assert len(service.list_for_user(borrower.id)) == 1


async def test_create_once_relies_on_unique_index(db, other_db, borrower, loan):
    """A writer that misses the other's row in exists() still cannot insert a second one"""
    service, racing = NotificationService(db), NotificationService(other_db)
    kwargs = dict(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.LOAN_APPROVED,
        title="Loan Approved",
        message="Approved",
        once=True,
    )
    service.repo.exists = lambda loan_id, type: False

    assert racing.create(**kwargs) is not None
    assert service.create(**kwargs) is None
    assert len(service.list_for_user(borrower.id)) == 1


async def test_create_failure_does_not_undo_committed_loan(db, borrower, loan, ledger):
    """A failed notification is logged and rolled back on its own"""
    service = NotificationService(db)

    def broken_create(**fields):
        raise OperationalError("INSERT INTO notification", {}, Exception("disk I/O error"))

    service.repo.create = broken_create

    result = service.create(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.LOAN_REJECTED,
        title="Loan Application Rejected",
        message="Rejected",
    )

    assert result is None
    assert ledger.get_loan(loan.id).status == "pending"


async def test_mark_read(db, borrower, loan):
    service = NotificationService(db)
    notification = service.create(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.LOAN_APPROVED,
        title="Loan Approved",
        message="Approved",
    )

    service.mark_read(notification.id, borrower.id)

    assert service.list_for_user(borrower.id)[0].is_read is True


async def test_mark_read_of_another_users_notification(db, borrower, make_user, loan):
    service = NotificationService(db)
    notification = service.create(
        user_id=borrower.id,
        loan_id=loan.id,
        type=NotificationType.LOAN_APPROVED,
        title="Loan Approved",
        message="Approved",
    )
    stranger = make_user()

    with pytest.raises(NotFoundError):
        service.mark_read(notification.id, stranger.id)
    with pytest.raises(NotFoundError):
        service.mark_read(uuid.uuid4(), borrower.id)
