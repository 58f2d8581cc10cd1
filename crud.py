import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
from models import Book, Borrowing, BorrowStatus, Fine, Reservation, ReservationStatus, User, UserRole
from admin_schemas import UserCreate, UserUpdate
from schemas import BookCreate, BookUpdate
from exceptions import ConflictError, ForbiddenError, NotFoundError
import auth_utils

logger = logging.getLogger(__name__)

# an explicit null in an update clears optional columns but is ignored for these
_REQUIRED_BOOK_FIELDS = {c.name for c in Book.__table__.columns if not c.nullable}
_REQUIRED_USER_FIELDS = {c.name for c in User.__table__.columns if not c.nullable}


def _commit(db: Session, what: str):
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Convert DB error to clear message for API layer
        msg = str(e.orig) if getattr(e, 'orig', None) else str(e)
        logger.warning("Integrity error while saving %s: %s", what, msg)
        raise ConflictError(f"Could not save {what}: conflicting record")


# --- Book CRUD ---
def add_book(book_data: BookCreate, db: Session) -> Book:
    # Guard against duplicates before hitting DB constraints
    exists = db.query(Book).filter(Book.isbn == book_data.isbn).first()
    if exists:
        raise ConflictError("A book with this ISBN already exists")

    new_book = Book(
        **book_data.model_dump(exclude={"total_copies"}),
        total_copies=book_data.total_copies,
        available_copies=book_data.total_copies,
    )
    db.add(new_book)
    _commit(db, "book")
    db.refresh(new_book)
    logger.info("Added book %s (%s) with %d copies", new_book.id, new_book.isbn, new_book.total_copies)
    return new_book


def get_book_or_404(book_id: int, db: Session) -> Book:
    book = db.get(Book, book_id)
    if not book:
        raise NotFoundError("Book not found")
    return book


def search_books(
    db: Session,
    title: Optional[str] = None,
    author: Optional[str] = None,
    category: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Book]:
    query = db.query(Book)
    if title:
        query = query.filter(Book.title.ilike(f"%{title}%"))
    if author:
        query = query.filter(Book.author.ilike(f"%{author}%"))
    if category:
        query = query.filter(Book.category == category)
    return query.order_by(Book.created_at.desc(), Book.id.desc()).offset(skip).limit(limit).all()


def update_book(book_id: int, book_data: BookUpdate, db: Session) -> Book:
    book = get_book_or_404(book_id, db)
    data = book_data.model_dump(exclude_unset=True)

    if data.get("isbn") and data["isbn"] != book.isbn:
        taken = db.query(Book).filter(Book.isbn == data["isbn"], Book.id != book_id).first()
        if taken:
            raise ConflictError("ISBN already taken by another book")

    if data.get("total_copies") is not None:
        # copies currently out stay out; only the shelf count moves
        currently_borrowed = book.total_copies - book.available_copies
        book.available_copies = max(0, data["total_copies"] - currently_borrowed)
        book.total_copies = data.pop("total_copies")
    else:
        data.pop("total_copies", None)

    for key, value in data.items():
        if value is None and key in _REQUIRED_BOOK_FIELDS:
            continue
        setattr(book, key, value)
    _commit(db, "book")
    db.refresh(book)
    return book


def delete_book(book_id: int, db: Session):
    book = get_book_or_404(book_id, db)
    active = db.query(Borrowing).filter(
        Borrowing.book_id == book_id, Borrowing.status == BorrowStatus.ACTIVE
    ).count()
    if active:
        raise ConflictError("Cannot delete book with active borrowings. Please return all copies first.")
    pending = db.query(Reservation).filter(
        Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING
    ).count()
    if pending:
        raise ConflictError("Cannot delete book with pending reservations. Please process them first.")

    # returned borrowings, their fines and processed reservations cascade with the book
    db.delete(book)
    _commit(db, "book deletion")
    logger.info("Deleted book %s", book_id)


# --- User CRUD ---
def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == email.lower()).first()


def get_user_or_404(user_id: int, db: Session) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def add_user(user_data: UserCreate, db: Session) -> User:
    if get_user_by_email(user_data.email, db):
        raise ConflictError("User with this email already exists")
    user = User(
        email=user_data.email,
        hashed_password=auth_utils.get_password_hash(user_data.password),
        name=user_data.name,
        role=user_data.role,
        phone=user_data.phone,
        address=user_data.address,
    )
    db.add(user)
    _commit(db, "user")
    db.refresh(user)
    logger.info("Created %s user %s", user.role.value, user.email)
    return user


def get_users(db: Session, skip: int = 0, limit: int = 100) -> List[User]:
    return db.query(User).order_by(User.created_at.desc(), User.id.desc()).offset(skip).limit(limit).all()


def user_counts(user_id: int, db: Session) -> dict:
    return {
        "borrowings": db.query(Borrowing).filter(Borrowing.user_id == user_id).count(),
        "fines": db.query(Fine).filter(Fine.user_id == user_id).count(),
        "reservations": db.query(Reservation).filter(Reservation.user_id == user_id).count(),
    }


def update_user(user_id: int, user_data: UserUpdate, db: Session) -> User:
    user = get_user_or_404(user_id, db)
    data = user_data.model_dump(exclude_unset=True)
    if data.get("email") and data["email"].lower() != user.email.lower():
        if get_user_by_email(data["email"], db):
            raise ConflictError("Email already in use")
    for key, value in data.items():
        if value is None and key in _REQUIRED_USER_FIELDS:
            continue
        setattr(user, key, value)
    _commit(db, "user")
    db.refresh(user)
    return user


def delete_user(user_id: int, current_user: User, db: Session):
    if user_id == current_user.id:
        raise ForbiddenError("Cannot delete yourself")
    user = get_user_or_404(user_id, db)
    active = db.query(Borrowing).filter(
        Borrowing.user_id == user_id, Borrowing.status == BorrowStatus.ACTIVE
    ).count()
    if active:
        raise ConflictError("Cannot delete user with active borrowings")
    unpaid = db.query(Fine).filter(Fine.user_id == user_id, Fine.is_paid.is_(False)).count()
    if unpaid:
        raise ConflictError("Cannot delete user with unpaid fines")

    # requests this user processed stay on record without an approver
    db.query(Reservation).filter(Reservation.approved_by == user_id).update(
        {Reservation.approved_by: None}, synchronize_session=False
    )
    db.delete(user)
    _commit(db, "user deletion")
    logger.info("Deleted user %s", user_id)


# --- Circulation listings ---
def list_borrowings(
    db: Session,
    user_id: Optional[int] = None,
    status: Optional[BorrowStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Borrowing]:
    query = db.query(Borrowing)
    if user_id is not None:
        query = query.filter(Borrowing.user_id == user_id)
    if status is not None:
        query = query.filter(Borrowing.status == status)
    return query.order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc()).offset(skip).limit(limit).all()


def list_reservations(db: Session, user_id: Optional[int] = None, skip: int = 0, limit: int = 100) -> List[Reservation]:
    query = db.query(Reservation)
    if user_id is not None:
        query = query.filter(Reservation.user_id == user_id)
    return query.order_by(Reservation.reserved_at.desc(), Reservation.id.desc()).offset(skip).limit(limit).all()


def list_fines(db: Session, user_id: Optional[int] = None, unpaid_only: bool = False, skip: int = 0, limit: int = 100) -> List[Fine]:
    query = db.query(Fine)
    if user_id is not None:
        query = query.filter(Fine.user_id == user_id)
    if unpaid_only:
        query = query.filter(Fine.is_paid.is_(False))
    return query.order_by(Fine.created_at.desc(), Fine.id.desc()).offset(skip).limit(limit).all()


# --- Stats ---
def overdue_borrowings(db: Session, now: Optional[datetime] = None) -> List[Borrowing]:
    now = now or models.utcnow()
    return (
        db.query(Borrowing)
        .filter(Borrowing.status == BorrowStatus.ACTIVE, Borrowing.due_date < now)
        .order_by(Borrowing.due_date)
        .all()
    )


def library_stats(db: Session, now: Optional[datetime] = None) -> dict:
    """Return aggregated counts for the staff dashboard."""
    now = now or models.utcnow()
    stats = {}
    stats['total_books'] = db.query(Book).count()
    stats['total_users'] = db.query(User).filter(User.role == UserRole.PATRON).count()
    stats['books_issued'] = db.query(Borrowing).filter(Borrowing.status == BorrowStatus.ACTIVE).count()
    stats['overdue_books'] = db.query(Borrowing).filter(
        Borrowing.status == BorrowStatus.ACTIVE, Borrowing.due_date < now
    ).count()
    unpaid = db.query(func.coalesce(func.sum(Fine.amount), 0.0)).filter(Fine.is_paid.is_(False)).scalar()
    stats['total_fines'] = float(unpaid or 0.0)
    return stats
