"""
Return and violation processing for physical loans.

A return is all-or-nothing: payments, condition and status changes, the
reader's violation points, the record itself and the hold queue
re-evaluation of every returned book commit together or not at all.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List

from sqlalchemy.orm import Session

from circulation import models, schemas
from circulation.allocator import ProcessedBook, process_hold_queues, processed_books
from circulation.borrow_requests import approval_notifications
from circulation.config import DEFAULT_VIOLATION_DUE_DATE_DAYS
from circulation.database import transaction
from circulation.exceptions import NotFoundError, ValidationError
from circulation.notifications import NotificationMessage
from circulation.policies import (
    POLICY_ID_TO_CONDITION,
    PolicyRepository,
    ViolationPolicyMetadata,
)
from circulation.validation import end_of_day, today


logger = logging.getLogger(__name__)

# Terminal copy status implied by the condition of a violated copy
CONDITION_TO_ITEM_STATUS: Dict[models.ItemCondition, models.ItemStatus] = {
    models.ItemCondition.LOST: models.ItemStatus.LOST,
    models.ItemCondition.DAMAGED: models.ItemStatus.RETIRED,
}


@dataclass
class ReturnOutcome:
    borrow_record: models.BorrowRecord
    message: str
    processed_books: List[ProcessedBook] = field(default_factory=list)
    payments: List[models.Payment] = field(default_factory=list)
    notifications: List[NotificationMessage] = field(default_factory=list)


def item_status_for_condition(condition: models.ItemCondition) -> models.ItemStatus:
    return CONDITION_TO_ITEM_STATUS.get(condition, models.ItemStatus.AVAILABLE)


def default_violation_amount(
    item: models.BookItem, metadata: ViolationPolicyMetadata
) -> float:
    price = item.book.price or 0
    return round(price * metadata.penalty_percent / 100, 2)


def default_due_date() -> date:
    return date.today() + timedelta(days=DEFAULT_VIOLATION_DUE_DATE_DAYS)


def lock_open_record(tx: Session, record_id: int) -> models.BorrowRecord:
    """
    Load the record with a row lock and check it can still be returned.

    Checked after the lock is taken, so of two concurrent returns of the
    same record the second one sees the first one's result.
    """
    record = (
        tx.query(models.BorrowRecord)
        .filter(
            models.BorrowRecord.id == record_id,
            models.BorrowRecord.is_deleted == False,
        )
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not record:
        raise NotFoundError("Borrow record not found")
    if record.status != models.BorrowStatus.BORROWED or record.actual_return_date:
        raise ValidationError("This borrow record has already been returned")
    return record


def process_return(
    db: Session,
    record_id: int,
    data: schemas.ReturnRequest,
    policies: PolicyRepository,
) -> ReturnOutcome:
    """
    Close a borrow record, book its violations and re-run the hold queue.

    Internal Working:
    1. Each violation creates an unpaid Payment due at 23:59:59 of its due
       date (amount and due date default from the policy and book price), adds the policy's points and gives the copy its new condition
       and terminal status (LOST -> LOST, DAMAGED -> RETIRED, else AVAILABLE)
    2. The reader's violation_points grow by the total in one UPDATE
    3. Copies with a condition update but no violation get the condition only
    4. The record becomes RETURNED, actual_return_date is today at midnight
    5. Copies without a violation become AVAILABLE
    6. The allocator runs once per distinct book of the record

    Args:
        db: Request session; the whole return is one transaction on it
        record_id: Borrow record to close
        data: Violations and condition updates reported by staff
        policies: Policy lookup used for payments and violation points

    Raises:
        NotFoundError: record missing
        ValidationError: already returned, copy not part of the record,
            unknown policy
    """
    with transaction(db) as tx:
        record = lock_open_record(tx, record_id)
        if not record.borrow_books:
            raise ValidationError("This is an ebook borrow record, use return-ebook")
        items_by_id = {bb.book_item_id: bb.book_item for bb in record.borrow_books}

        named_ids = [v.book_item_id for v in data.violations] + list(data.condition_updates)
        foreign = sorted({item_id for item_id in named_ids if item_id not in items_by_id})
        if foreign:
            raise ValidationError(
                f"Book items {', '.join(str(i) for i in foreign)} "
                f"are not part of borrow record {record_id}"
            )

        payments: List[models.Payment] = []
        total_points = 0
        violated_ids = set()
        for violation in data.violations:
            policy = policies.get_policy(violation.policy_id)
            if policy is None:
                raise ValidationError(f"Policy {violation.policy_id} not found")

            metadata = policies.get_violation_metadata(violation.policy_id)
            if metadata is None:
                raise ValidationError(
                    f"Policy {violation.policy_id} is not a violation policy"
                )

            item = items_by_id[violation.book_item_id]
            amount = violation.amount
            if amount is None:
                amount = default_violation_amount(item, metadata)
            payment = models.Payment(
                policy_id=policy.id,
                borrow_record_id=record.id,
                book_item_id=violation.book_item_id,
                amount=amount,
                is_paid=False,
                due_date=end_of_day(violation.due_date or default_due_date()),
            )
            tx.add(payment)
            payments.append(payment)
            total_points += metadata.points

            condition = data.condition_updates.get(
                violation.book_item_id,
                POLICY_ID_TO_CONDITION.get(policy.id, item.condition),
            )
            item.condition = condition
            item.status = item_status_for_condition(condition)
            violated_ids.add(item.id)

        if total_points > 0:
            tx.query(models.User).filter(models.User.id == record.user_id).update(
                {models.User.violation_points: models.User.violation_points + total_points},
                synchronize_session=False,
            )

        for item_id, condition in data.condition_updates.items():
            if item_id not in violated_ids:
                items_by_id[item_id].condition = condition

        record.status = models.BorrowStatus.RETURNED
        record.actual_return_date = today()

        for item in items_by_id.values():
            if item.id not in violated_ids:
                item.status = models.ItemStatus.AVAILABLE
        tx.flush()

        results = process_hold_queues(tx, [item.book_id for item in items_by_id.values()])
        processed = processed_books(results)
        notifications = approval_notifications(tx, results)

    # violation_points was changed by a bulk UPDATE
    db.refresh(record.user)

    for payment in payments:
        notifications.append(
            NotificationMessage(
                user_id=record.user_id,
                title="Violation Recorded",
                message=(
                    f"A payment of {payment.amount:g} for {payment.policy_id} is due "
                    f"on {payment.due_date.date().isoformat()}."
                ),
                type=models.NotificationType.PAYMENT,
            )
        )

    logger.info(
        f"Borrow record {record_id} returned: {len(payments)} payments, "
        f"{total_points} violation points, "
        f"{sum(len(p.approved_requests) for p in processed)} requests approved"
    )
    return ReturnOutcome(
        borrow_record=record,
        message="Books returned successfully",
        processed_books=processed,
        payments=payments,
        notifications=notifications,
    )
