from datetime import date, datetime, time

from sqlalchemy.orm import Session

from circulation import models
from circulation.config import MAX_BORROW_DAYS
from circulation.exceptions import ValidationError


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def end_of_day(day: date) -> datetime:
    """23:59:59 of the given day, used for payment due dates."""
    return datetime.combine(day, time(23, 59, 59))


def today() -> datetime:
    return start_of_day(date.today())


def validate_borrow_period(start: date, end: date, allow_past_start: bool = True):
    """
    Shared date rules for requests and loans.

    Raises:
        ValidationError: end before start, span over MAX_BORROW_DAYS, or a
            start in the past when allow_past_start is False
    """
    if not allow_past_start and start < date.today():
        raise ValidationError("Start date cannot be in the past")
    if end < start:
        raise ValidationError("Return date must be after borrow date")
    if (end - start).days > MAX_BORROW_DAYS:
        raise ValidationError(f"Borrow period cannot exceed {MAX_BORROW_DAYS} days")


def get_reader(db: Session, user_id: int) -> models.User:
    user = (
        db.query(models.User)
        .filter(
            models.User.id == user_id,
            models.User.role == models.UserRole.READER,
            models.User.is_deleted == False,
        )
        .first()
    )
    if not user:
        raise ValidationError("User not found or is not a reader")
    return user
