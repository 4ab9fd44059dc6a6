from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from circulation import models
from circulation.database import Base, get_db
from circulation.endpoints import app, get_notification_sink

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    """
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


class RecordingNotificationSink:
    def __init__(self):
        self.notifications = []

    def queue_notification(self, notification):
        self.notifications.append(notification)

    def titles(self) -> List[str]:
        return [n.title for n in self.notifications]


class LibraryFactory:
    """Builds catalog, inventory and circulation rows straight in the database."""

    def __init__(self, db: Session):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _save(self, *rows):
        self.db.add_all(rows)
        self.db.commit()
        for row in rows:
            self.db.refresh(row)

    def user(self, role=models.UserRole.READER, violation_points=0) -> models.User:
        n = self._next()
        user = models.User(
            full_name=f"User {n}",
            email=f"user{n}@example.com",
            role=role,
            violation_points=violation_points,
        )
        self._save(user)
        return user

    def book(self, copies: int = 0, title: Optional[str] = None) -> models.Book:
        n = self._next()
        author = models.Author(full_name=f"Author {n}")
        book = models.Book(
            title=title or f"Book {n}",
            isbn=f"{9780000000000 + n}",
            author=author,
        )
        self._save(author, book)
        self.copies(book, copies)
        return book

    def copies(
        self,
        book: models.Book,
        count: int,
        status=models.ItemStatus.AVAILABLE,
    ) -> List[models.BookItem]:
        items = [
            models.BookItem(
                book_id=book.id,
                code=f"B{book.id}-C{self._next()}",
                status=status,
                condition=models.ItemCondition.GOOD,
            )
            for _ in range(count)
        ]
        if items:
            self._save(*items)
        return items

    def edition(self, book: models.Book, file_format=models.FileFormat.PDF):
        edition = models.BookEdition(book_id=book.id, file_format=file_format)
        self._save(edition)
        return edition

    def policy(self, policy_id: str, amount: float = 100, unit=models.PolicyUnit.FIXED):
        policy = models.Policy(
            id=policy_id,
            name=policy_id.replace("_", " ").title(),
            amount=amount,
            unit=unit,
        )
        self._save(policy)
        return policy

    def violation_policies(self):
        for policy_id in ("LOST_BOOK", "DAMAGED_BOOK", "WORN_BOOK"):
            self.policy(policy_id)

    def request(
        self,
        user: models.User,
        items: Iterable[Tuple[models.Book, int]],
        status=models.BorrowRequestStatus.PENDING,
    ) -> models.BorrowRequest:
        start = datetime.combine(date.today(), datetime.min.time())
        request = models.BorrowRequest(
            user_id=user.id,
            start_date=start,
            end_date=start + timedelta(days=14),
            status=status,
            items=[
                models.BorrowRequestItem(book_id=book.id, quantity=quantity)
                for book, quantity in items
            ],
        )
        self._save(request)
        return request

    def loan(
        self,
        user: models.User,
        book_items: Iterable[models.BookItem],
        borrow_date: Optional[date] = None,
        days: int = 14,
    ) -> models.BorrowRecord:
        borrow_day = borrow_date or date.today()
        start = datetime.combine(borrow_day, datetime.min.time())
        record = models.BorrowRecord(
            user_id=user.id,
            borrow_date=start,
            return_date=start + timedelta(days=days),
            status=models.BorrowStatus.BORROWED,
        )
        for item in book_items:
            item.status = models.ItemStatus.ON_BORROW
            record.borrow_books.append(models.BorrowBook(book_item_id=item.id))
            self.db.add(item)
        self._save(record)
        return record


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test and drop them afterwards, so every
    test starts with an empty database.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db_session):
    return LibraryFactory(db_session)


@pytest.fixture
def notification_sink():
    return RecordingNotificationSink()


@pytest.fixture
def client(notification_sink):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_sink] = lambda: notification_sink
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def session_factory():
    """Opens independent sessions, as separate HTTP requests would."""
    return TestingSessionLocal


@pytest.fixture
def test_engine():
    return engine
