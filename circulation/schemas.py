from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from circulation.models import (
    BorrowRequestStatus,
    BorrowStatus,
    FileFormat,
    ItemCondition,
    ItemStatus,
    NotificationType,
    PolicyUnit,
    UserRole,
)


class CamelModel(BaseModel):
    """
    Base schema for every request and response body.

    Internal Working:
    - alias_generator exposes snake_case attributes as camelCase JSON keys
      (book_item_ids <-> bookItemIds); FastAPI serializes responses by alias
    - populate_by_name=True also accepts the snake_case names on input
    - from_attributes=True lets schemas be built straight from ORM objects
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _ensure_distinct(values: List[int], label: str) -> List[int]:
    if len(set(values)) != len(values):
        raise ValueError(f"Duplicate {label} are not allowed")
    return values


# Catalog and accounts


class UserCreate(CamelModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    role: UserRole = UserRole.READER


class User(CamelModel):
    id: int
    full_name: str
    email: str
    role: UserRole
    violation_points: int


class UserSummary(CamelModel):
    id: int
    full_name: str
    email: str
    violation_points: int


class AuthorCreate(CamelModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    bio: Optional[str] = Field(None, max_length=2000)


class Author(CamelModel):
    id: int
    full_name: str
    bio: Optional[str] = None


class AuthorSummary(CamelModel):
    id: int
    full_name: str


class BookCreate(CamelModel):
    """
    Schema for creating a catalog entry.

    Copies and electronic editions are added through their own endpoints.
    """

    title: str = Field(..., min_length=1, max_length=500)
    isbn: str = Field(..., min_length=10, max_length=13)
    author_id: int = Field(..., gt=0)
    publish_year: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)


class BookSummary(CamelModel):
    id: int
    title: str
    isbn: str
    author: AuthorSummary


class Book(BookSummary):
    publish_year: Optional[int] = None
    price: Optional[float] = None


class BookEditionCreate(CamelModel):
    file_format: FileFormat


class BookEdition(CamelModel):
    id: int
    book_id: int
    file_format: FileFormat


class BookItemCreate(CamelModel):
    code: str = Field(..., min_length=1, max_length=100)
    condition: ItemCondition = ItemCondition.NEW


class BookItem(CamelModel):
    id: int
    book_id: int
    code: str
    status: ItemStatus
    condition: ItemCondition


class BookItemDetail(CamelModel):
    id: int
    code: str
    status: ItemStatus
    condition: ItemCondition
    book: BookSummary


class BookAvailability(CamelModel):
    """
    Capacity snapshot of a book.

    remaining = available - reserved, where reserved is the total quantity
    promised to APPROVED requests that have not been fulfilled yet.
    """

    book_id: int
    available: int
    reserved: int
    remaining: int


class PolicyCreate(CamelModel):
    id: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=200)
    amount: float = Field(..., ge=0)
    unit: PolicyUnit = PolicyUnit.FIXED


class Policy(CamelModel):
    id: str
    name: str
    amount: float
    unit: PolicyUnit


# Borrow requests


class BorrowRequestItemCreate(CamelModel):
    book_id: int = Field(..., gt=0)
    quantity: int = Field(1, ge=1)


class BorrowRequestCreate(CamelModel):
    """
    Schema for a reader's request for one or more books.

    Each book may appear once; quantity is the number of copies wanted.
    """

    user_id: int = Field(..., gt=0)
    start_date: date
    end_date: date
    items: List[BorrowRequestItemCreate] = Field(..., min_length=1)

    @field_validator("items")
    @classmethod
    def distinct_books(cls, items: List[BorrowRequestItemCreate]):
        _ensure_distinct([item.book_id for item in items], "bookIds")
        return items


class BorrowRequestItem(CamelModel):
    id: int
    book_id: int
    quantity: int
    book: BookSummary


class BorrowRequest(CamelModel):
    id: int
    user_id: int
    start_date: datetime
    end_date: datetime
    status: BorrowRequestStatus
    created_at: datetime
    items: List[BorrowRequestItem] = []


class BorrowRequestResponse(CamelModel):
    borrow_request: BorrowRequest
    queue_position: Optional[int] = None
    message: str


class BorrowRequestManage(CamelModel):
    status: BorrowRequestStatus

    @field_validator("status")
    @classmethod
    def staff_transition(cls, value: BorrowRequestStatus):
        if value not in (BorrowRequestStatus.APPROVED, BorrowRequestStatus.REJECTED):
            raise ValueError("Status must be APPROVED or REJECTED")
        return value


class ProcessedBook(CamelModel):
    book_id: int
    approved_requests: List[int]


class BorrowRequestManageResponse(CamelModel):
    borrow_request: BorrowRequest
    processed_books: List[ProcessedBook] = []
    message: str


# Borrow records


class BorrowRecordCreate(CamelModel):
    """
    Schema for staff creating a loan from specific physical copies.

    request_ids optionally names APPROVED requests of the same reader that
    the selected copies should fulfill.
    """

    user_id: int = Field(..., gt=0)
    borrow_date: date
    return_date: date
    book_item_ids: List[int] = Field(..., min_length=1)
    request_ids: Optional[List[int]] = None

    @field_validator("book_item_ids")
    @classmethod
    def distinct_positive_items(cls, values: List[int]):
        if any(value <= 0 for value in values):
            raise ValueError("Invalid bookItemId in bookItemIds array")
        return _ensure_distinct(values, "bookItemIds")


class BorrowBook(CamelModel):
    book_item: BookItemDetail


class BorrowEbook(CamelModel):
    book_id: int
    is_deleted: bool


class BorrowRecord(CamelModel):
    id: int
    user_id: int
    borrow_date: datetime
    return_date: datetime
    actual_return_date: Optional[datetime] = None
    renewal_count: int
    status: BorrowStatus
    created_at: datetime


class BorrowRecordDetail(BorrowRecord):
    user: UserSummary
    borrow_books: List[BorrowBook] = []


class FulfilledRequest(CamelModel):
    id: int
    status: BorrowRequestStatus


class BorrowRecordCreateResponse(CamelModel):
    borrow_record: BorrowRecordDetail
    fulfilled_requests: Optional[List[FulfilledRequest]] = None
    message: str


class Payment(CamelModel):
    id: int
    policy_id: str
    borrow_record_id: int
    book_item_id: Optional[int] = None
    amount: float
    is_paid: bool
    due_date: Optional[datetime] = None
    created_at: datetime


class BorrowRecordWithPayments(BorrowRecordDetail):
    borrow_ebooks: List[BorrowEbook] = []
    payments: List[Payment] = []


class ViolationCreate(CamelModel):
    """
    A violation reported for one returned copy.

    amount defaults to the book price times the policy penalty percent and
    due_date to DEFAULT_VIOLATION_DUE_DATE_DAYS from today.
    """

    book_item_id: int = Field(..., gt=0)
    policy_id: str = Field(..., min_length=1)
    amount: Optional[float] = Field(None, ge=0)
    due_date: Optional[date] = None


class ReturnRequest(CamelModel):
    """
    Schema for processing a return.

    condition_updates maps bookItemId to the condition observed at return;
    JSON object keys arrive as strings and are coerced to int.
    """

    violations: List[ViolationCreate] = []
    condition_updates: Dict[int, ItemCondition] = {}

    @field_validator("violations")
    @classmethod
    def one_violation_per_copy(cls, violations: List[ViolationCreate]):
        _ensure_distinct([v.book_item_id for v in violations], "violations per book item")
        return violations


class ReturnResponse(CamelModel):
    borrow_record: BorrowRecordDetail
    processed_books: List[ProcessedBook] = []
    payments: List[Payment] = []
    message: str


class RenewResponse(CamelModel):
    borrow_record: BorrowRecordDetail
    message: str


# Ebooks


class EbookBorrowRequestCreate(CamelModel):
    user_id: int = Field(..., gt=0)
    book_id: int = Field(..., gt=0)
    start_date: date
    end_date: date


class EbookBorrowResponse(CamelModel):
    borrow_request: BorrowRequest
    borrow_record: BorrowRecord
    message: str


class EbookReturnResponse(CamelModel):
    borrow_record: BorrowRecord
    message: str


class Notification(CamelModel):
    id: int
    user_id: int
    title: str
    message: str
    type: NotificationType
    is_read: bool
    created_at: datetime
