import enum
from datetime import datetime

from circulation.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
)


class UserRole(str, enum.Enum):
    READER = "READER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"


class ItemStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ON_BORROW = "ON_BORROW"
    RESERVED = "RESERVED"
    LOST = "LOST"
    RETIRED = "RETIRED"


class ItemCondition(str, enum.Enum):
    NEW = "NEW"
    GOOD = "GOOD"
    WORN = "WORN"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


class BorrowRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FULFILLED = "FULFILLED"


class BorrowStatus(str, enum.Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


class PolicyUnit(str, enum.Enum):
    FIXED = "FIXED"
    PER_DAY = "PER_DAY"


class FileFormat(str, enum.Enum):
    PDF = "PDF"
    EPUB = "EPUB"


class NotificationType(str, enum.Enum):
    SYSTEM = "SYSTEM"
    PAYMENT = "PAYMENT"


class User(Base):
    """
    Library member or staff account.

    violation_points is a running counter incremented by return processing,
    once per return transaction, by the sum of that return's violations.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(Enum(UserRole), default=UserRole.READER, nullable=False)
    violation_points = Column(Integer, default=0, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    borrow_requests = relationship("BorrowRequest", back_populates="user")
    borrow_records = relationship("BorrowRecord", back_populates="user")


class Author(Base):
    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False, index=True)
    bio = Column(String, nullable=True)

    books = relationship("Book", back_populates="author")


class Book(Base):
    """
    Catalog entry (a title). Physical copies are BookItem rows and
    electronic editions are BookEdition rows.
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, nullable=False, index=True)
    publish_year = Column(Integer, nullable=True)
    price = Column(Float, nullable=True)
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    author = relationship("Author", back_populates="books")
    items = relationship("BookItem", back_populates="book")
    editions = relationship("BookEdition", back_populates="book")


class BookEdition(Base):
    __tablename__ = "book_editions"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    file_format = Column(Enum(FileFormat), nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    book = relationship("Book", back_populates="editions")


class BookItem(Base):
    """
    A physical copy, the unit of allocation.

    Copies are never deleted; retired or lost copies keep their row with a
    terminal status and is_deleted is only a soft flag.
    """

    __tablename__ = "book_items"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    code = Column(String, unique=True, nullable=False, index=True)
    status = Column(Enum(ItemStatus), default=ItemStatus.AVAILABLE, nullable=False)
    condition = Column(Enum(ItemCondition), default=ItemCondition.NEW, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    book = relationship("Book", back_populates="items")


class BorrowRequest(Base):
    """
    A reader's ask for one or more books.

    Creation order (created_at, then id) is the FIFO position used by the
    hold queue allocator.
    """

    __tablename__ = "borrow_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(
        Enum(BorrowRequestStatus),
        default=BorrowRequestStatus.PENDING,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )
    is_deleted = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="borrow_requests")
    items = relationship(
        "BorrowRequestItem",
        back_populates="borrow_request",
        cascade="all, delete-orphan",
        order_by="BorrowRequestItem.id",
    )


class BorrowRequestItem(Base):
    __tablename__ = "borrow_request_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_borrow_request_items_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    borrow_request_id = Column(
        Integer, ForeignKey("borrow_requests.id"), nullable=False, index=True
    )
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    quantity = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    borrow_request = relationship("BorrowRequest", back_populates="items")
    book = relationship("Book")


class BorrowRecord(Base):
    """
    A loan. Created together with its BorrowBook (or BorrowEbook) rows and
    afterwards only mutated by renewal and return processing.
    """

    __tablename__ = "borrow_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    borrow_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=False)
    actual_return_date = Column(DateTime, nullable=True)
    renewal_count = Column(Integer, default=0, nullable=False)
    status = Column(
        Enum(BorrowStatus), default=BorrowStatus.BORROWED, nullable=False, index=True
    )
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )
    is_deleted = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="borrow_records")
    borrow_books = relationship(
        "BorrowBook", back_populates="borrow_record", order_by="BorrowBook.id"
    )
    borrow_ebooks = relationship(
        "BorrowEbook", back_populates="borrow_record", order_by="BorrowEbook.id"
    )
    payments = relationship(
        "Payment", back_populates="borrow_record", order_by="Payment.id"
    )


class BorrowBook(Base):
    __tablename__ = "borrow_books"

    id = Column(Integer, primary_key=True, index=True)
    borrow_record_id = Column(
        Integer, ForeignKey("borrow_records.id"), nullable=False, index=True
    )
    book_item_id = Column(
        Integer, ForeignKey("book_items.id"), nullable=False, index=True
    )

    borrow_record = relationship("BorrowRecord", back_populates="borrow_books")
    book_item = relationship("BookItem")


class BorrowEbook(Base):
    __tablename__ = "borrow_ebooks"

    id = Column(Integer, primary_key=True, index=True)
    borrow_record_id = Column(
        Integer, ForeignKey("borrow_records.id"), nullable=False, index=True
    )
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    is_deleted = Column(Boolean, default=False, nullable=False)

    borrow_record = relationship("BorrowRecord", back_populates="borrow_ebooks")
    book = relationship("Book")


class Policy(Base):
    """
    Fee policy keyed by a stable string id such as LOST_BOOK.

    For FIXED policies amount is the penalty percent of the book price,
    for PER_DAY policies it is a daily amount.
    """

    __tablename__ = "policies"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    unit = Column(Enum(PolicyUnit), default=PolicyUnit.FIXED, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    policy_id = Column(String, ForeignKey("policies.id"), nullable=False)
    borrow_record_id = Column(
        Integer, ForeignKey("borrow_records.id"), nullable=False, index=True
    )
    book_item_id = Column(Integer, ForeignKey("book_items.id"), nullable=True)
    amount = Column(Float, nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    borrow_record = relationship("BorrowRecord", back_populates="payments")
    policy = relationship("Policy")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    type = Column(Enum(NotificationType), default=NotificationType.SYSTEM, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
