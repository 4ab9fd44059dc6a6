import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from circulation import models, schemas
from circulation.borrow_requests import ACTIVE_REQUEST_STATUSES
from circulation.config import EXTENSION_DAYS, MAX_BORROW_DAYS, MAX_RENEWALS
from circulation.database import transaction
from circulation.exceptions import NotFoundError, ValidationError
from circulation.notifications import NotificationMessage
from circulation.validation import get_reader, start_of_day, today, validate_borrow_period


logger = logging.getLogger(__name__)


@dataclass
class BorrowRecordOutcome:
    borrow_record: models.BorrowRecord
    message: str
    fulfilled_requests: List[models.BorrowRequest] = field(default_factory=list)
    notifications: List[NotificationMessage] = field(default_factory=list)


def get_borrow_record(db: Session, record_id: int) -> models.BorrowRecord:
    record = (
        db.query(models.BorrowRecord)
        .filter(
            models.BorrowRecord.id == record_id,
            models.BorrowRecord.is_deleted == False,
        )
        .first()
    )
    if not record:
        raise NotFoundError("Borrow record not found")
    return record


def loan_items_lock_query(tx: Session, book_item_ids: List[int]):
    """
    Row lock on the copies selected for a loan.

    Ordered by (book_id, id), the same order the allocator locks copies in.
    """
    return (
        tx.query(models.BookItem)
        .filter(
            models.BookItem.id.in_(book_item_ids),
            models.BookItem.is_deleted == False,
        )
        .order_by(models.BookItem.book_id, models.BookItem.id)
        .with_for_update()
        .populate_existing()
    )


def _fulfill_requests(
    tx: Session,
    user_id: int,
    request_ids: List[int],
    book_items: List[models.BookItem],
) -> List[models.BorrowRequest]:
    """
    Mark APPROVED requests of the user FULFILLED when the lent copies cover
    every item of the request.

    Requests are matched oldest first against one shared per-book counter;
    a request that cannot be fully covered keeps its APPROVED status and
    consumes nothing.
    """
    copies_left = Counter(item.book_id for item in book_items)
    requests = (
        tx.query(models.BorrowRequest)
        .filter(
            models.BorrowRequest.id.in_(request_ids),
            models.BorrowRequest.user_id == user_id,
            models.BorrowRequest.status == models.BorrowRequestStatus.APPROVED,
            models.BorrowRequest.is_deleted == False,
        )
        .order_by(models.BorrowRequest.created_at, models.BorrowRequest.id)
        .with_for_update()
        .all()
    )

    fulfilled = []
    for request in requests:
        needed = Counter()
        for item in request.items:
            needed[item.book_id] += item.quantity
        if any(copies_left[book_id] < quantity for book_id, quantity in needed.items()):
            logger.info(f"Borrow request {request.id} left APPROVED: copies do not cover it")
            continue
        copies_left.subtract(needed)
        request.status = models.BorrowRequestStatus.FULFILLED
        fulfilled.append(request)
    return fulfilled


def create_borrow_record(
    db: Session, data: schemas.BorrowRecordCreate
) -> BorrowRecordOutcome:
    """
    Lend specific physical copies to a reader.

    Internal Working:
    1. Date range and reader checks run before any write
    2. In one transaction the selected copies are locked and must all exist,
       not be soft-deleted and be AVAILABLE; one bad copy fails the batch
    3. One BorrowRecord is created with a BorrowBook per copy and every copy
       flips to ON_BORROW
    4. Requested APPROVED requests are marked FULFILLED when covered

    Raises:
        ValidationError: bad dates, not a reader, unknown or unavailable copy
    """
    validate_borrow_period(data.borrow_date, data.return_date)
    user = get_reader(db, data.user_id)

    with transaction(db) as tx:
        book_items = loan_items_lock_query(tx, data.book_item_ids).all()
        if len(book_items) != len(data.book_item_ids):
            raise ValidationError("One or more book items not found")

        unavailable = [
            item for item in book_items if item.status != models.ItemStatus.AVAILABLE
        ]
        if unavailable:
            codes = ", ".join(item.code for item in unavailable)
            statuses = ", ".join(item.status.value for item in unavailable)
            raise ValidationError(
                f"Book items are not available: {codes}. Current status: {statuses}"
            )

        record = models.BorrowRecord(
            user_id=user.id,
            borrow_date=start_of_day(data.borrow_date),
            return_date=start_of_day(data.return_date),
            status=models.BorrowStatus.BORROWED,
        )
        tx.add(record)
        for item in book_items:
            record.borrow_books.append(models.BorrowBook(book_item=item))
            item.status = models.ItemStatus.ON_BORROW

        fulfilled = []
        if data.request_ids:
            fulfilled = _fulfill_requests(tx, user.id, data.request_ids, book_items)
        tx.flush()

    logger.info(
        f"Borrow record {record.id} created for user {user.id} "
        f"with {len(book_items)} copies, {len(fulfilled)} requests fulfilled"
    )
    notifications = [
        NotificationMessage(
            user_id=user.id,
            title="Books Borrowed",
            message=(
                f"You have borrowed {len(book_items)} book(s). "
                f"Return date: {record.return_date.date().isoformat()}"
            ),
        )
    ]
    return BorrowRecordOutcome(
        borrow_record=record,
        message="Borrow record created successfully",
        fulfilled_requests=fulfilled,
        notifications=notifications,
    )


def renew_borrow_record(db: Session, record_id: int) -> BorrowRecordOutcome:
    """
    Extend an open loan by EXTENSION_DAYS.

    Refused when the loan is returned or overdue, when MAX_RENEWALS is
    reached, or when another reader is queued for one of its books. The new
    return date is capped at MAX_BORROW_DAYS after the borrow date.
    """
    with transaction(db) as tx:
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
            raise ValidationError(
                "Cannot renew: This borrow record has already been returned"
            )
        if record.return_date < today():
            raise ValidationError(
                "Cannot renew when overdue. Please return the book or pay the penalty fee."
            )
        if record.renewal_count >= MAX_RENEWALS:
            raise ValidationError(
                f"Maximum renewal limit reached ({MAX_RENEWALS} renewals)"
            )

        for borrow_book in record.borrow_books:
            book = borrow_book.book_item.book
            queued = (
                tx.query(models.BorrowRequestItem.id)
                .join(models.BorrowRequest)
                .filter(
                    models.BorrowRequestItem.book_id == book.id,
                    models.BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
                    models.BorrowRequest.is_deleted == False,
                )
                .first()
            )
            if queued:
                raise ValidationError(
                    f'Cannot renew: The book "{book.title}" has pending reservations. '
                    "Please return it so others can borrow."
                )

        latest = record.borrow_date + timedelta(days=MAX_BORROW_DAYS)
        new_return_date = min(record.return_date + timedelta(days=EXTENSION_DAYS), latest)
        if new_return_date <= record.return_date:
            raise ValidationError(
                f"Borrow period cannot exceed {MAX_BORROW_DAYS} days"
            )

        record.return_date = new_return_date
        record.renewal_count += 1
        tx.flush()

    logger.info(f"Borrow record {record_id} renewed until {new_return_date.date()}")
    return BorrowRecordOutcome(
        borrow_record=record,
        message=f"Renewal successful. New return date: {new_return_date.date().isoformat()}",
    )
