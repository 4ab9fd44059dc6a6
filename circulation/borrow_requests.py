import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from circulation import models, schemas
from circulation.allocator import (
    AllocationResult,
    Approved,
    ProcessedBook,
    find_unmet_item,
    lock_book_items,
    process_hold_queues,
    processed_books,
    queue_position,
    request_book_ids,
)
from circulation.database import transaction
from circulation.exceptions import NotFoundError, ValidationError
from circulation.notifications import NotificationMessage
from circulation.validation import get_reader, start_of_day, validate_borrow_period


logger = logging.getLogger(__name__)

ACTIVE_REQUEST_STATUSES = (
    models.BorrowRequestStatus.PENDING,
    models.BorrowRequestStatus.APPROVED,
)


@dataclass
class BorrowRequestOutcome:
    borrow_request: models.BorrowRequest
    message: str
    queue_position: Optional[int] = None
    processed_books: List[ProcessedBook] = field(default_factory=list)
    notifications: List[NotificationMessage] = field(default_factory=list)


def approval_notifications(
    tx: Session, results: Iterable[AllocationResult]
) -> List[NotificationMessage]:
    """Reader notifications for requests the allocator just approved."""
    notifications = []
    for result in results:
        if not isinstance(result, Approved):
            continue
        request = tx.get(models.BorrowRequest, result.request_id)
        notifications.append(
            NotificationMessage(
                user_id=request.user_id,
                title="Borrow Request Approved",
                message=(
                    f"Your borrow request #{request.id} has been approved. "
                    "Please visit the library to collect your books."
                ),
            )
        )
    return notifications


def get_borrow_request(db: Session, request_id: int) -> models.BorrowRequest:
    request = (
        db.query(models.BorrowRequest)
        .filter(
            models.BorrowRequest.id == request_id,
            models.BorrowRequest.is_deleted == False,
        )
        .first()
    )
    if not request:
        raise NotFoundError(f"Borrow request with id {request_id} not found")
    return request


def create_borrow_request(
    db: Session, data: schemas.BorrowRequestCreate
) -> BorrowRequestOutcome:
    """
    Register a reader's request for physical copies.

    The request is stored PENDING and then offered to the hold queue of each
    of its books in the same transaction: it is approved right away only if
    it is first in line and every book has capacity. Older queued requests
    for the same books are served first.
    """
    validate_borrow_period(data.start_date, data.end_date, allow_past_start=False)
    user = get_reader(db, data.user_id)

    book_ids = [item.book_id for item in data.items]
    books = (
        db.query(models.Book)
        .filter(models.Book.id.in_(book_ids), models.Book.is_deleted == False)
        .all()
    )
    found = {book.id: book for book in books}
    for book_id in book_ids:
        if book_id not in found:
            raise NotFoundError(f"Book with id {book_id} not found")

    existing = (
        db.query(models.BorrowRequestItem)
        .join(models.BorrowRequest)
        .filter(
            models.BorrowRequest.user_id == user.id,
            models.BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            models.BorrowRequest.is_deleted == False,
            models.BorrowRequestItem.book_id.in_(book_ids),
        )
        .first()
    )
    if existing:
        title = found[existing.book_id].title
        raise ValidationError(
            f'You already have an active borrow request for "{title}". '
            "Please wait for your current request to be fulfilled or rejected."
        )

    with transaction(db) as tx:
        request = models.BorrowRequest(
            user_id=user.id,
            start_date=start_of_day(data.start_date),
            end_date=start_of_day(data.end_date),
            status=models.BorrowRequestStatus.PENDING,
            items=[
                models.BorrowRequestItem(book_id=item.book_id, quantity=item.quantity)
                for item in data.items
            ],
        )
        tx.add(request)
        tx.flush()

        results = process_hold_queues(tx, book_ids)
        tx.refresh(request)
        position = queue_position(tx, request)
        notifications = approval_notifications(
            tx, [r for r in results if isinstance(r, Approved) and r.request_id != request.id]
        )
        processed = processed_books(results)

    if request.status == models.BorrowRequestStatus.APPROVED:
        message = (
            "Borrow request approved successfully. "
            "Please visit the library to collect your books."
        )
    else:
        message = (
            f"Borrow request registered. You are in position #{position or 1} in the "
            "queue. We will notify you when books are available."
        )
    logger.info(f"Borrow request {request.id} created with status {request.status.value}")

    return BorrowRequestOutcome(
        borrow_request=request,
        message=message,
        queue_position=position,
        processed_books=processed,
        notifications=notifications,
    )


def manage_borrow_request(
    db: Session, request_id: int, new_status: models.BorrowRequestStatus
) -> BorrowRequestOutcome:
    """
    Staff decision on a request.

    Approving is only allowed from PENDING and only when every book still
    has remaining capacity, so a manual approval can never over-promise.
    Rejecting is allowed from PENDING or APPROVED; the released capacity is
    offered to the hold queue of each of the request's books.

    The copies of the request's books are locked before the request row,
    the same order the allocator takes them in.
    """
    with transaction(db) as tx:
        lock_book_items(tx, request_book_ids(tx, request_id))
        request = (
            tx.query(models.BorrowRequest)
            .filter(
                models.BorrowRequest.id == request_id,
                models.BorrowRequest.is_deleted == False,
            )
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not request:
            raise NotFoundError(f"Borrow request with id {request_id} not found")

        current = request.status
        book_ids = [item.book_id for item in request.items]
        results: List[AllocationResult] = []

        if new_status == models.BorrowRequestStatus.APPROVED:
            if current != models.BorrowRequestStatus.PENDING:
                raise ValidationError(
                    f"Can only approve PENDING requests. Current status: {current.value}"
                )
            unmet = find_unmet_item(tx, request)
            if unmet is not None:
                raise ValidationError(
                    f"Not enough copies available for book {unmet.book_id} "
                    f"(requested {unmet.quantity})"
                )
            request.status = models.BorrowRequestStatus.APPROVED
            message = "Borrow request approved successfully"
        elif new_status == models.BorrowRequestStatus.REJECTED:
            if current not in ACTIVE_REQUEST_STATUSES:
                raise ValidationError(
                    "Can only reject PENDING or APPROVED requests. "
                    f"Current status: {current.value}"
                )
            request.status = models.BorrowRequestStatus.REJECTED
            tx.flush()
            results = process_hold_queues(tx, book_ids)
            message = "Borrow request rejected successfully"
        else:
            raise ValidationError("Invalid status")

        tx.flush()
        notifications = [
            NotificationMessage(
                user_id=request.user_id,
                title=f"Borrow Request {new_status.value.title()}",
                message=f"Your borrow request #{request.id} has been {new_status.value.lower()}.",
            )
        ]
        notifications.extend(approval_notifications(tx, results))
        processed = processed_books(results)

    logger.info(f"Borrow request {request_id}: {current.value} -> {new_status.value}")
    return BorrowRequestOutcome(
        borrow_request=request,
        message=message,
        processed_books=processed,
        notifications=notifications,
    )
