import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from circulation import models, schemas
from circulation.database import transaction
from circulation.exceptions import NotFoundError, ValidationError
from circulation.notifications import NotificationMessage
from circulation.validation import get_reader, start_of_day, validate_borrow_period


logger = logging.getLogger(__name__)


@dataclass
class EbookOutcome:
    borrow_record: models.BorrowRecord
    message: str
    borrow_request: Optional[models.BorrowRequest] = None
    notifications: List[NotificationMessage] = field(default_factory=list)


def book_has_ebook(db: Session, book_id: int) -> bool:
    edition = (
        db.query(models.BookEdition.id)
        .filter(
            models.BookEdition.book_id == book_id,
            models.BookEdition.is_deleted == False,
        )
        .first()
    )
    return edition is not None


def user_has_open_ebook_loan(db: Session, user_id: int, book_id: int) -> bool:
    loan = (
        db.query(models.BorrowRecord.id)
        .join(models.BorrowEbook)
        .filter(
            models.BorrowRecord.user_id == user_id,
            models.BorrowRecord.status == models.BorrowStatus.BORROWED,
            models.BorrowRecord.is_deleted == False,
            models.BorrowEbook.book_id == book_id,
            models.BorrowEbook.is_deleted == False,
        )
        .first()
    )
    return loan is not None


def borrow_ebook(db: Session, data: schemas.EbookBorrowRequestCreate) -> EbookOutcome:
    """
    Lend an electronic edition immediately.

    Ebooks skip the hold queue: the request is stored already FULFILLED
    together with its loan, and no physical copy is touched.

    Raises:
        ValidationError: not a reader, bad dates, open loan of the same ebook
        NotFoundError: unknown book or no electronic edition
    """
    user = get_reader(db, data.user_id)

    book = (
        db.query(models.Book)
        .filter(models.Book.id == data.book_id, models.Book.is_deleted == False)
        .first()
    )
    if not book:
        raise NotFoundError(f"Book with id {data.book_id} not found")
    if not book_has_ebook(db, book.id):
        raise NotFoundError("This book does not have an electronic version")
    if user_has_open_ebook_loan(db, user.id, book.id):
        raise ValidationError(
            "You have already borrowed this ebook. Please return it before borrowing again."
        )
    validate_borrow_period(data.start_date, data.end_date, allow_past_start=False)

    start = start_of_day(data.start_date)
    end = start_of_day(data.end_date)
    with transaction(db) as tx:
        record = models.BorrowRecord(
            user_id=user.id,
            borrow_date=start,
            return_date=end,
            status=models.BorrowStatus.BORROWED,
        )
        record.borrow_ebooks.append(models.BorrowEbook(book_id=book.id))
        request = models.BorrowRequest(
            user_id=user.id,
            start_date=start,
            end_date=end,
            status=models.BorrowRequestStatus.FULFILLED,
            items=[models.BorrowRequestItem(book_id=book.id, quantity=1)],
        )
        tx.add_all([record, request])
        tx.flush()

    logger.info(f"Ebook {book.id} lent to user {user.id} (record {record.id})")
    notification = NotificationMessage(
        user_id=user.id,
        title="Ebook Borrowed Successfully",
        message=(
            f'You have successfully borrowed "{book.title}". You can read it now. '
            f"Return date: {end.date().isoformat()}"
        ),
    )
    return EbookOutcome(
        borrow_record=record,
        borrow_request=request,
        message=f'Ebook "{book.title}" borrowed successfully. You can read it now.',
        notifications=[notification],
    )


def return_ebook(db: Session, record_id: int) -> EbookOutcome:
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
            raise ValidationError("This borrow record has already been returned")

        links = [link for link in record.borrow_ebooks if not link.is_deleted]
        if not links:
            raise ValidationError("This is not an ebook borrow record")

        record.status = models.BorrowStatus.RETURNED
        record.actual_return_date = datetime.now()
        for link in links:
            link.is_deleted = True
        titles = [link.book.title for link in links]
        tx.flush()

    logger.info(f"Ebook loan {record_id} returned")
    notifications = [
        NotificationMessage(
            user_id=record.user_id,
            title="Ebook Returned Successfully",
            message=f'You have successfully returned "{title}".',
        )
        for title in titles
    ]
    return EbookOutcome(
        borrow_record=record,
        message="Ebook returned successfully",
        notifications=notifications,
    )
