"""
Hold queue allocator.

Approval is a capacity promise, not a copy binding: an APPROVED request
holds `quantity` copies of each of its books out of the AVAILABLE pool until
staff turn it into a borrow record and pick the physical copies.

    remaining(book) = count(AVAILABLE copies) - sum(quantity of APPROVED items)

Every call advances at most one request, the oldest PENDING one wanting the
book, and only if every book of that request has enough remaining copies.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Union

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from circulation import models


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Approved:
    request_id: int
    book_id: int


@dataclass(frozen=True)
class NoEligibleRequest:
    book_id: int


@dataclass(frozen=True)
class InsufficientCapacity:
    request_id: int
    book_id: int
    short_book_id: int


AllocationResult = Union[Approved, NoEligibleRequest, InsufficientCapacity]


def book_items_lock_query(tx: Session, book_ids: Iterable[int]) -> Query:
    """
    SELECT ... FOR UPDATE over every copy of the given books.

    Rows are ordered by (book_id, id) so concurrent transactions acquire the
    locks in the same order.
    """
    return (
        tx.query(models.BookItem.id)
        .filter(models.BookItem.book_id.in_(sorted(set(book_ids))))
        .order_by(models.BookItem.book_id, models.BookItem.id)
        .with_for_update()
    )


def lock_book_items(tx: Session, book_ids: Iterable[int]) -> None:
    book_ids = list(book_ids)
    if book_ids:
        book_items_lock_query(tx, book_ids).all()


def count_available_items(tx: Session, book_id: int) -> int:
    return (
        tx.query(func.count(models.BookItem.id))
        .filter(
            models.BookItem.book_id == book_id,
            models.BookItem.status == models.ItemStatus.AVAILABLE,
            models.BookItem.is_deleted == False,
        )
        .scalar()
    )


def count_reserved_quantity(tx: Session, book_id: int) -> int:
    """Copies of the book promised to APPROVED but unfulfilled requests."""
    return (
        tx.query(func.coalesce(func.sum(models.BorrowRequestItem.quantity), 0))
        .select_from(models.BorrowRequestItem)
        .join(models.BorrowRequest)
        .filter(
            models.BorrowRequestItem.book_id == book_id,
            models.BorrowRequest.status == models.BorrowRequestStatus.APPROVED,
            models.BorrowRequest.is_deleted == False,
        )
        .scalar()
    )


def remaining_capacity(tx: Session, book_id: int) -> int:
    return count_available_items(tx, book_id) - count_reserved_quantity(tx, book_id)


def find_unmet_item(
    tx: Session, request: models.BorrowRequest
) -> Optional[models.BorrowRequestItem]:
    """First item of the request whose book lacks remaining capacity, if any."""
    for item in request.items:
        if remaining_capacity(tx, item.book_id) < item.quantity:
            return item
    return None


def request_book_ids(tx: Session, request_id: int) -> List[int]:
    return [
        book_id
        for (book_id,) in tx.query(models.BorrowRequestItem.book_id).filter(
            models.BorrowRequestItem.borrow_request_id == request_id
        )
    ]


def pending_items_in_queue_order(tx: Session, book_id: int) -> Query:
    return (
        tx.query(models.BorrowRequestItem)
        .join(models.BorrowRequest)
        .filter(
            models.BorrowRequestItem.book_id == book_id,
            models.BorrowRequest.status == models.BorrowRequestStatus.PENDING,
            models.BorrowRequest.is_deleted == False,
        )
        .order_by(
            models.BorrowRequestItem.created_at.asc(),
            models.BorrowRequestItem.id.asc(),
        )
    )


def queue_position(tx: Session, request: models.BorrowRequest) -> Optional[int]:
    """
    1-based FIFO position of a PENDING request among the pending requests
    for its first book; None once the request has left the queue.
    """
    if request.status != models.BorrowRequestStatus.PENDING or not request.items:
        return None

    book_id = request.items[0].book_id
    queued_request_ids: List[int] = [
        item.borrow_request_id for item in pending_items_in_queue_order(tx, book_id)
    ]
    if request.id not in queued_request_ids:
        return None
    return queued_request_ids.index(request.id) + 1


def process_hold_queue_for_book(tx: Session, book_id: int) -> AllocationResult:
    """
    Try to advance the hold queue of one book by exactly one request.

    Internal Working:
    1. Read the oldest PENDING request item for the book (FIFO by item
       creation time, id as tie-breaker) without taking locks
    2. Lock the copies of every book of that request, the trigger book
       included, in one statement ordered by (book_id, id)
    3. Read the head again under those locks; if it changed meanwhile,
       extend the lock set to the new head's books and repeat
    4. Lock the request row, then compute the remaining capacity of every
       book in the request
    5. All-or-nothing: if any book is short, leave the request PENDING and
       report InsufficientCapacity; nothing is reserved for the other books
    6. Otherwise flip the request to APPROVED

    Lock order is always copies (by book_id, id) before request rows, the
    same order loan creation and staff approval use.

    The caller owns the transaction; this function only flushes.

    Args:
        tx: Session of the enclosing unit of work
        book_id: Book whose available-copy count may have changed

    Returns:
        Approved, NoEligibleRequest or InsufficientCapacity
    """
    # sessions run with autoflush off; capacity must see the caller's changes
    tx.flush()

    locked_books: Set[int] = set()
    while True:
        first_item = pending_items_in_queue_order(tx, book_id).first()
        if first_item is None:
            return NoEligibleRequest(book_id=book_id)

        wanted = {book_id} | set(request_book_ids(tx, first_item.borrow_request_id))
        if wanted <= locked_books:
            break
        locked_books |= wanted
        lock_book_items(tx, locked_books)

    request = (
        tx.query(models.BorrowRequest)
        .filter(models.BorrowRequest.id == first_item.borrow_request_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    if request.status != models.BorrowRequestStatus.PENDING:
        return NoEligibleRequest(book_id=book_id)

    unmet = find_unmet_item(tx, request)
    if unmet is not None:
        logger.info(
            f"Hold queue for book {book_id}: request {request.id} stays pending, "
            f"book {unmet.book_id} lacks capacity"
        )
        return InsufficientCapacity(
            request_id=request.id, book_id=book_id, short_book_id=unmet.book_id
        )

    request.status = models.BorrowRequestStatus.APPROVED
    tx.flush()
    logger.info(f"Hold queue for book {book_id}: request {request.id} approved")
    return Approved(request_id=request.id, book_id=book_id)


@dataclass
class ProcessedBook:
    book_id: int
    approved_requests: List[int]


def process_hold_queues(tx: Session, book_ids: Iterable[int]) -> List[AllocationResult]:
    """
    Run the allocator once per distinct book, in ascending book id order.

    The copies of all given books are locked up front in one ordered
    statement; the per-book calls then only add the other books of the
    requests they consider.
    """
    book_ids = sorted(set(book_ids))
    lock_book_items(tx, book_ids)
    return [process_hold_queue_for_book(tx, book_id) for book_id in book_ids]


def processed_books(results: Iterable[AllocationResult]) -> List[ProcessedBook]:
    """Books whose allocator call approved a request, with the approved ids."""
    return [
        ProcessedBook(book_id=result.book_id, approved_requests=[result.request_id])
        for result in results
        if isinstance(result, Approved)
    ]
