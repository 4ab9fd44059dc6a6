import logging
from typing import List

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, status
from sqlalchemy.orm import Session

from circulation import models
from circulation import schemas
from circulation.allocator import count_available_items, count_reserved_quantity, queue_position
from circulation.borrow_records import create_borrow_record, get_borrow_record, renew_borrow_record
from circulation.borrow_requests import create_borrow_request, get_borrow_request, manage_borrow_request
from circulation.config import LOG_LEVEL
from circulation.database import SessionLocal, engine, get_db
from circulation.ebooks import borrow_ebook, return_ebook
from circulation.exceptions import add_exception_handlers
from circulation.notifications import (
    DatabaseNotificationSink,
    NotificationSink,
    dispatch_notifications,
)
from circulation.policies import PolicyRepository, SqlPolicyRepository
from circulation.returns import process_return


logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Library Circulation API",
    description="Borrow requests, hold queue, loans, returns and violations",
    version="1.0.0",
)

add_exception_handlers(app)


def get_notification_sink() -> NotificationSink:
    return DatabaseNotificationSink(SessionLocal)


def get_policy_repository(db: Session = Depends(get_db)) -> PolicyRepository:
    return SqlPolicyRepository(db)


def _borrow_request_schema(request: models.BorrowRequest) -> schemas.BorrowRequest:
    return schemas.BorrowRequest.model_validate(request)


def _processed_books_schema(processed) -> List[schemas.ProcessedBook]:
    return [schemas.ProcessedBook.model_validate(book) for book in processed]


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "circulation-api"}


# Catalog and accounts


@app.post("/users", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
def create_user(user: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Register a reader or librarian account.

    Args:
        user: Name, email and role (defaults to READER)
        db: Database session (injected by FastAPI)

    Returns:
        The created user with zero violation points

    Raises:
        HTTPException: 400 if the email is already registered
    """
    existing = db.query(models.User).filter(models.User.email == user.email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"User with email {user.email} already exists",
        )

    db_user = models.User(**user.model_dump())
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


@app.get("/users/{user_id}", response_model=schemas.User)
def get_user(user_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a user by id. Soft-deleted users are treated as missing.

    Raises:
        HTTPException: 404 if user not found
    """
    user = (
        db.query(models.User)
        .filter(models.User.id == user_id, models.User.is_deleted == False)
        .first()
    )
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User with id {user_id} not found",
        )
    return user


@app.get("/users/{user_id}/notifications", response_model=List[schemas.Notification])
def list_notifications(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """
    List the notifications stored for a user, newest first.

    Args:
        user_id: Recipient of the notifications
        skip: Number of records to skip (for pagination)
        limit: Maximum number of records to return
        db: Database session (injected by FastAPI)

    Returns:
        List of notifications, empty for an unknown user
    """
    return (
        db.query(models.Notification)
        .filter(models.Notification.user_id == user_id)
        .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


@app.post("/authors", response_model=schemas.Author, status_code=status.HTTP_201_CREATED)
def create_author(author: schemas.AuthorCreate, db: Session = Depends(get_db)):
    """Create an author that books can reference."""
    db_author = models.Author(**author.model_dump())
    db.add(db_author)
    db.commit()
    db.refresh(db_author)
    return db_author


@app.post("/books", response_model=schemas.Book, status_code=status.HTTP_201_CREATED)
def create_book(book: schemas.BookCreate, db: Session = Depends(get_db)):
    """
    Create a catalog entry.

    Raises:
        HTTPException: 404 if author not found, 400 if ISBN exists
    """
    author = db.query(models.Author).filter(models.Author.id == book.author_id).first()
    if not author:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Author with id {book.author_id} not found",
        )

    existing_book = db.query(models.Book).filter(models.Book.isbn == book.isbn).first()
    if existing_book:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Book with ISBN {book.isbn} already exists",
        )

    db_book = models.Book(**book.model_dump())
    db.add(db_book)
    db.commit()
    db.refresh(db_book)
    return db_book


def _get_book_or_404(db: Session, book_id: int) -> models.Book:
    book = (
        db.query(models.Book)
        .filter(models.Book.id == book_id, models.Book.is_deleted == False)
        .first()
    )
    if not book:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Book with id {book_id} not found",
        )
    return book


@app.get("/books/{book_id}", response_model=schemas.Book)
def get_book(book_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a book with its author.

    Raises:
        HTTPException: 404 if book not found or soft-deleted
    """
    return _get_book_or_404(db, book_id)


@app.post(
    "/books/{book_id}/editions",
    response_model=schemas.BookEdition,
    status_code=status.HTTP_201_CREATED,
)
def create_book_edition(
    book_id: int, edition: schemas.BookEditionCreate, db: Session = Depends(get_db)
):
    """
    Attach an electronic edition (PDF or EPUB) to a book.

    Args:
        book_id: Book the edition belongs to
        edition: File format of the edition
        db: Database session (injected by FastAPI)

    Raises:
        HTTPException: 404 if book not found
    """
    _get_book_or_404(db, book_id)
    db_edition = models.BookEdition(book_id=book_id, **edition.model_dump())
    db.add(db_edition)
    db.commit()
    db.refresh(db_edition)
    return db_edition


@app.post(
    "/books/{book_id}/items",
    response_model=schemas.BookItem,
    status_code=status.HTTP_201_CREATED,
)
def create_book_item(
    book_id: int, item: schemas.BookItemCreate, db: Session = Depends(get_db)
):
    """
    Add a physical copy to the inventory.

    A new copy is AVAILABLE, so the book's hold queue is not touched here;
    pending requests are advanced when copies are returned.

    Raises:
        HTTPException: 404 if book not found, 400 if the code exists
    """
    _get_book_or_404(db, book_id)

    existing = db.query(models.BookItem).filter(models.BookItem.code == item.code).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Book item with code {item.code} already exists",
        )

    db_item = models.BookItem(
        book_id=book_id,
        code=item.code,
        condition=item.condition,
        status=models.ItemStatus.AVAILABLE,
    )
    db.add(db_item)
    db.commit()
    db.refresh(db_item)
    return db_item


@app.get("/books/{book_id}/availability", response_model=schemas.BookAvailability)
def get_book_availability(book_id: int, db: Session = Depends(get_db)):
    _get_book_or_404(db, book_id)
    available = count_available_items(db, book_id)
    reserved = count_reserved_quantity(db, book_id)
    return schemas.BookAvailability(
        book_id=book_id,
        available=available,
        reserved=reserved,
        remaining=available - reserved,
    )


@app.post("/policies", response_model=schemas.Policy, status_code=status.HTTP_201_CREATED)
def create_policy(policy: schemas.PolicyCreate, db: Session = Depends(get_db)):
    """
    Create a violation policy referenced by returns.

    Raises:
        HTTPException: 400 if a policy with the same id exists
    """
    existing = db.query(models.Policy).filter(models.Policy.id == policy.id).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Policy {policy.id} already exists",
        )

    db_policy = models.Policy(**policy.model_dump())
    db.add(db_policy)
    db.commit()
    db.refresh(db_policy)
    return db_policy


# Borrow requests


@app.post(
    "/borrow-requests",
    response_model=schemas.BorrowRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_borrow_request(
    data: schemas.BorrowRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Create a borrow request for physical copies.

    The request is approved immediately when it is first in line and every
    requested book has remaining capacity; otherwise it waits in the hold
    queue and the response carries its position.
    """
    outcome = create_borrow_request(db, data)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)
    return schemas.BorrowRequestResponse(
        borrow_request=_borrow_request_schema(outcome.borrow_request),
        queue_position=outcome.queue_position,
        message=outcome.message,
    )


@app.get("/borrow-requests/{request_id}", response_model=schemas.BorrowRequestResponse)
def read_borrow_request(request_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a borrow request with its items.

    Returns:
        The request, its 1-based hold queue position while PENDING (None
        otherwise) and a status message

    Raises:
        NotFoundError: 404 if the request does not exist
    """
    request = get_borrow_request(db, request_id)
    position = queue_position(db, request)
    return schemas.BorrowRequestResponse(
        borrow_request=_borrow_request_schema(request),
        queue_position=position,
        message=f"Borrow request is {request.status.value}",
    )


@app.patch(
    "/borrow-requests/{request_id}/manage",
    response_model=schemas.BorrowRequestManageResponse,
)
def patch_borrow_request(
    request_id: int,
    data: schemas.BorrowRequestManage,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Approve or reject a borrow request (staff operation).

    Internal Working:
    1. APPROVED is only allowed for a PENDING request with capacity for
       every item
    2. REJECTED is allowed for a PENDING or APPROVED request and re-runs
       the hold queue of each of its books
    3. Notifications are queued to run after the response

    Returns:
        The updated request and the books whose queue advanced

    Raises:
        NotFoundError: 404 if the request does not exist
        ValidationError: 400 for a disallowed transition or missing capacity
    """
    outcome = manage_borrow_request(db, request_id, data.status)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)
    return schemas.BorrowRequestManageResponse(
        borrow_request=_borrow_request_schema(outcome.borrow_request),
        processed_books=_processed_books_schema(outcome.processed_books),
        message=outcome.message,
    )


# Borrow records


@app.post(
    "/borrow-records",
    response_model=schemas.BorrowRecordCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_borrow_record(
    data: schemas.BorrowRecordCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Lend specific physical copies to a reader (staff operation).

    Internal Working:
    1. FastAPI validates the body (non-empty, distinct, positive bookItemIds)
    2. The service checks dates and the reader, then in one transaction
       binds every copy (all AVAILABLE or nothing) and flips it to ON_BORROW
    3. APPROVED requests named in requestIds are fulfilled when covered
    4. The reader notification is queued to run after the response

    Returns:
        The loan with copies, book and author details, plus fulfilled requests
    """
    outcome = create_borrow_record(db, data)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)

    fulfilled = [
        schemas.FulfilledRequest(id=request.id, status=request.status)
        for request in outcome.fulfilled_requests
    ]
    return schemas.BorrowRecordCreateResponse(
        borrow_record=schemas.BorrowRecordDetail.model_validate(outcome.borrow_record),
        fulfilled_requests=fulfilled or None,
        message=outcome.message,
    )


@app.get("/borrow-records/{record_id}", response_model=schemas.BorrowRecordWithPayments)
def read_borrow_record(record_id: int, db: Session = Depends(get_db)):
    return schemas.BorrowRecordWithPayments.model_validate(get_borrow_record(db, record_id))


@app.post("/borrow-records/{record_id}/return", response_model=schemas.ReturnResponse)
def post_return(
    record_id: int,
    data: schemas.ReturnRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    policies: PolicyRepository = Depends(get_policy_repository),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Process the return of a physical loan (staff operation).

    Violations create payments and violation points, copies get their new
    condition and status, and the hold queue of every returned book is
    re-evaluated, all in one transaction. A second return of the same
    record is rejected with 400.

    Returns:
        The returned loan, books whose queue advanced, and created payments
    """
    outcome = process_return(db, record_id, data, policies)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)
    return schemas.ReturnResponse(
        borrow_record=schemas.BorrowRecordDetail.model_validate(outcome.borrow_record),
        processed_books=_processed_books_schema(outcome.processed_books),
        payments=[schemas.Payment.model_validate(p) for p in outcome.payments],
        message=outcome.message,
    )


@app.post("/borrow-records/{record_id}/renew", response_model=schemas.RenewResponse)
def post_renew(record_id: int, db: Session = Depends(get_db)):
    """
    Extend an open physical loan by the fixed renewal period.

    Returns:
        The loan with its new return date

    Raises:
        NotFoundError: 404 if the loan does not exist
        ValidationError: 400 if the loan is closed or overdue, if no renewal
            or borrow days are left, or if one of its books is requested
    """
    outcome = renew_borrow_record(db, record_id)
    return schemas.RenewResponse(
        borrow_record=schemas.BorrowRecordDetail.model_validate(outcome.borrow_record),
        message=outcome.message,
    )


@app.post(
    "/borrow-records/{record_id}/return-ebook",
    response_model=schemas.EbookReturnResponse,
)
def post_return_ebook(
    record_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Close an ebook loan. No copies or hold queues are involved.

    Raises:
        NotFoundError: 404 if the loan does not exist
        ValidationError: 400 if it is already returned or not an ebook loan
    """
    outcome = return_ebook(db, record_id)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)
    return schemas.EbookReturnResponse(
        borrow_record=schemas.BorrowRecord.model_validate(outcome.borrow_record),
        message=outcome.message,
    )


@app.post(
    "/ebook-borrow-requests",
    response_model=schemas.EbookBorrowResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_ebook_borrow_request(
    data: schemas.EbookBorrowRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Borrow an ebook. Auto-approved and fulfilled, no hold queue involved.
    """
    outcome = borrow_ebook(db, data)
    background_tasks.add_task(dispatch_notifications, sink, outcome.notifications)
    return schemas.EbookBorrowResponse(
        borrow_request=_borrow_request_schema(outcome.borrow_request),
        borrow_record=schemas.BorrowRecord.model_validate(outcome.borrow_record),
        message=outcome.message,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
