"""Borrowing, return, renewal and reservation rules.

Every operation takes the calling user explicitly, reads the current rows,
decides, and writes back inside one transaction. ``now`` defaults to the
current UTC time and may be passed in to evaluate due dates at a fixed instant.

``Book.available_copies`` is only ever changed through conditional UPDATE
statements, so the check and the write happen in the same statement.
"""
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.orm import Session

import models
from config import FINE_PER_DAY, LOAN_PERIOD_DAYS, MAX_RENEWALS, RESERVATION_HOLD_DAYS
from database import transaction
from exceptions import ConflictError, ForbiddenError, NotFoundError
from models import Book, Borrowing, BorrowStatus, Fine, Reservation, ReservationStatus, User

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
CENT = Decimal("0.01")


def overdue_days(due_date: datetime, returned_at: datetime) -> int:
    """Whole days late, any part of a day counting as one."""
    if returned_at <= due_date:
        return 0
    return math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)


def compute_fine(due_date: datetime, returned_at: datetime, per_day: Decimal = FINE_PER_DAY) -> Decimal:
    return (overdue_days(due_date, returned_at) * Decimal(per_day)).quantize(CENT)


def _require_staff(actor: User, action: str):
    if not actor.is_staff:
        raise ForbiddenError(f"Only librarians and admins can {action}")


def _get_borrowing(db: Session, borrowing_id: int) -> Borrowing:
    borrowing = db.get(Borrowing, borrowing_id)
    if not borrowing:
        raise NotFoundError("Borrowing record not found")
    return borrowing


def _get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if not reservation:
        raise NotFoundError("Reservation not found")
    return reservation


def _active_borrowing(db: Session, user_id: int, book_id: int) -> Optional[Borrowing]:
    return (
        db.query(Borrowing)
        .filter(
            Borrowing.user_id == user_id,
            Borrowing.book_id == book_id,
            Borrowing.status == BorrowStatus.ACTIVE,
        )
        .first()
    )


def _take_copy(db: Session, book_id: int):
    """Decrement available copies by one, refusing when none are left."""
    updated = (
        db.query(Book)
        .filter(Book.id == book_id, Book.available_copies >= 1)
        .update({Book.available_copies: Book.available_copies - 1}, synchronize_session=False)
    )
    if updated == 0:
        raise ConflictError("No copies of this book are currently available")


def _put_back_copy(db: Session, book_id: int):
    updated = (
        db.query(Book)
        .filter(Book.id == book_id, Book.available_copies < Book.total_copies)
        .update({Book.available_copies: Book.available_copies + 1}, synchronize_session=False)
    )
    if updated == 0:
        # total_copies was lowered while this copy was out
        logger.warning("Book %s already has all copies on the shelf; count left unchanged", book_id)


def _open_borrowing(db: Session, user_id: int, book_id: int, now: datetime) -> Borrowing:
    _take_copy(db, book_id)
    borrowing = Borrowing(
        user_id=user_id,
        book_id=book_id,
        borrowed_at=now,
        due_date=now + timedelta(days=LOAN_PERIOD_DAYS),
        status=BorrowStatus.ACTIVE,
        renewal_count=0,
    )
    db.add(borrowing)
    db.flush()
    return borrowing


def borrow_book(
    db: Session,
    book_id: int,
    actor: User,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Borrowing:
    """Lend one copy of a book to `user_id` (staff only) or to the caller."""
    now = now or models.utcnow()
    borrower_id = user_id if user_id is not None else actor.id
    if borrower_id != actor.id:
        _require_staff(actor, "borrow books for other users")
        if db.get(User, borrower_id) is None:
            raise NotFoundError("User not found")

    book = db.get(Book, book_id)
    if not book:
        raise NotFoundError("Book not found")
    if _active_borrowing(db, borrower_id, book_id):
        raise ConflictError("This user already has this book borrowed")
    if book.available_copies < 1:
        raise ConflictError("No copies of this book are currently available")

    with transaction(db):
        borrowing = _open_borrowing(db, borrower_id, book_id, now)
    db.refresh(borrowing)
    logger.info("User %s borrowed book %s (borrowing %s, due %s)", borrower_id, book_id, borrowing.id, borrowing.due_date)
    return borrowing


def return_book(
    db: Session,
    borrowing_id: int,
    actor: User,
    now: Optional[datetime] = None,
) -> Tuple[Borrowing, Optional[Fine]]:
    """Close a borrowing; a late return also creates an unpaid fine."""
    now = now or models.utcnow()
    _require_staff(actor, "process book returns")
    borrowing = _get_borrowing(db, borrowing_id)
    if borrowing.status == BorrowStatus.RETURNED:
        raise ConflictError("Book has already been returned")

    fine = None
    with transaction(db):
        # guard against a concurrent return of the same record
        closed = (
            db.query(Borrowing)
            .filter(Borrowing.id == borrowing_id, Borrowing.status == BorrowStatus.ACTIVE)
            .update({Borrowing.status: BorrowStatus.RETURNED, Borrowing.returned_at: now}, synchronize_session=False)
        )
        if closed == 0:
            raise ConflictError("Book has already been returned")
        _put_back_copy(db, borrowing.book_id)

        if now > borrowing.due_date:
            fine = Fine(
                borrowing_id=borrowing.id,
                user_id=borrowing.user_id,
                amount=compute_fine(borrowing.due_date, now),
                is_paid=False,
                created_at=now,
            )
            db.add(fine)

    db.refresh(borrowing)
    if fine is not None:
        db.refresh(fine)
        logger.info("Borrowing %s returned %d day(s) late, fine %.2f", borrowing.id, overdue_days(borrowing.due_date, now), fine.amount)
    else:
        logger.info("Borrowing %s returned on time", borrowing.id)
    return borrowing, fine


def renew_borrowing(
    db: Session,
    borrowing_id: int,
    actor: User,
    now: Optional[datetime] = None,
) -> Borrowing:
    """Extend the due date by one loan period.

    Refused once the renewal limit is reached, when the borrowing is already
    overdue, or while an unpaid fine is attached to it.
    """
    now = now or models.utcnow()
    borrowing = _get_borrowing(db, borrowing_id)
    if not actor.is_staff and borrowing.user_id != actor.id:
        raise ForbiddenError("You can only renew your own borrowings")
    if borrowing.status == BorrowStatus.RETURNED:
        raise ConflictError("Cannot renew a returned book")
    if borrowing.renewal_count >= MAX_RENEWALS:
        raise ConflictError(f"Maximum renewal limit reached ({MAX_RENEWALS} renewals)")
    if borrowing.due_date < now:
        raise ConflictError("Cannot renew an overdue book; please return it")
    unpaid = db.query(Fine).filter(Fine.borrowing_id == borrowing.id, Fine.is_paid.is_(False)).count()
    if unpaid:
        raise ConflictError("Cannot renew while a fine on this borrowing is unpaid")

    with transaction(db):
        borrowing.due_date = borrowing.due_date + timedelta(days=LOAN_PERIOD_DAYS)
        borrowing.renewal_count = borrowing.renewal_count + 1
    db.refresh(borrowing)
    logger.info("Borrowing %s renewed (%d/%d), now due %s", borrowing.id, borrowing.renewal_count, MAX_RENEWALS, borrowing.due_date)
    return borrowing


def renewals_remaining(borrowing: Borrowing) -> int:
    return max(0, MAX_RENEWALS - borrowing.renewal_count)


def create_reservation(
    db: Session,
    book_id: int,
    actor: User,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """File a borrow request for staff to approve or reject."""
    now = now or models.utcnow()
    if db.get(Book, book_id) is None:
        raise NotFoundError("Book not found")

    pending = (
        db.query(Reservation)
        .filter(
            Reservation.user_id == actor.id,
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
        )
        .first()
    )
    if pending:
        raise ConflictError("You already have an active request for this book")
    if _active_borrowing(db, actor.id, book_id):
        raise ConflictError("You already have this book borrowed")

    reservation = Reservation(
        user_id=actor.id,
        book_id=book_id,
        status=ReservationStatus.PENDING,
        reserved_at=now,
        expires_at=now + timedelta(days=RESERVATION_HOLD_DAYS),
        notes=notes or None,
    )
    with transaction(db):
        db.add(reservation)
    db.refresh(reservation)
    logger.info("User %s requested book %s (reservation %s)", actor.id, book_id, reservation.id)
    return reservation


def _pending_for_processing(db: Session, reservation_id: int, actor: User) -> Reservation:
    _require_staff(actor, "process borrow requests")
    reservation = _get_reservation(db, reservation_id)
    if reservation.status != ReservationStatus.PENDING:
        raise ConflictError("Only pending requests can be processed")
    return reservation


def approve_reservation(
    db: Session,
    reservation_id: int,
    actor: User,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Reservation, Borrowing]:
    """Issue the requested book: borrowing, copy count and request status change together."""
    now = now or models.utcnow()
    reservation = _pending_for_processing(db, reservation_id, actor)
    if reservation.book.available_copies < 1:
        raise ConflictError("Book is no longer available")
    if _active_borrowing(db, reservation.user_id, reservation.book_id):
        raise ConflictError("This user already has this book borrowed")

    with transaction(db):
        marked = (
            db.query(Reservation)
            .filter(Reservation.id == reservation_id, Reservation.status == ReservationStatus.PENDING)
            .update(
                {
                    Reservation.status: ReservationStatus.FULFILLED,
                    Reservation.approved_by: actor.id,
                    Reservation.approved_at: now,
                    Reservation.notes: notes or reservation.notes,
                },
                synchronize_session=False,
            )
        )
        if marked == 0:
            raise ConflictError("Only pending requests can be processed")
        borrowing = _open_borrowing(db, reservation.user_id, reservation.book_id, now)

    db.refresh(reservation)
    db.refresh(borrowing)
    logger.info("Reservation %s approved by %s, borrowing %s issued", reservation.id, actor.id, borrowing.id)
    return reservation, borrowing


def reject_reservation(
    db: Session,
    reservation_id: int,
    actor: User,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    now = now or models.utcnow()
    reservation = _pending_for_processing(db, reservation_id, actor)
    with transaction(db):
        reservation.status = ReservationStatus.REJECTED
        reservation.approved_by = actor.id
        reservation.approved_at = now
        reservation.notes = notes or reservation.notes
    db.refresh(reservation)
    logger.info("Reservation %s rejected by %s", reservation.id, actor.id)
    return reservation


def pay_fine(db: Session, fine_id: int, actor: User, now: Optional[datetime] = None) -> Fine:
    now = now or models.utcnow()
    _require_staff(actor, "record fine payments")
    fine = db.get(Fine, fine_id)
    if not fine:
        raise NotFoundError("Fine not found")
    if fine.is_paid:
        raise ConflictError("Fine has already been paid")
    with transaction(db):
        fine.is_paid = True
        fine.paid_at = now
    db.refresh(fine)
    logger.info("Fine %s (%.2f) paid", fine.id, fine.amount)
    return fine
