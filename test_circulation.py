from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import circulation
import models
from exceptions import ConflictError, ForbiddenError, NotFoundError

T0 = datetime(2025, 3, 1, 10, 0, 0)


def _copies(db, book):
    db.expire_all()
    b = db.get(models.Book, book.id)
    return b.available_copies, b.total_copies


def _borrowing_count(db, **filters):
    return db.query(models.Borrowing).filter_by(**filters).count()


# --- fine arithmetic ---

def test_overdue_days_rounds_partial_days_up():
    due = T0
    assert circulation.overdue_days(due, due) == 0
    assert circulation.overdue_days(due, due - timedelta(days=3)) == 0
    assert circulation.overdue_days(due, due + timedelta(minutes=1)) == 1
    assert circulation.overdue_days(due, due + timedelta(days=4, hours=1)) == 5


def test_compute_fine_uses_half_unit_per_day():
    assert circulation.compute_fine(T0, T0 + timedelta(days=5)) == Decimal("2.50")
    assert circulation.compute_fine(T0, T0 + timedelta(days=3), per_day=Decimal("0.10")) == Decimal("0.30")
    assert circulation.compute_fine(T0, T0) == 0


# --- borrow ---

def test_borrow_creates_active_borrowing_and_takes_a_copy(db, patron, make_book):
    book = make_book(total_copies=2)
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)

    assert borrowing.status == models.BorrowStatus.ACTIVE
    assert borrowing.renewal_count == 0
    assert borrowing.due_date == T0 + timedelta(days=14)
    assert borrowing.user_id == patron.id
    assert _copies(db, book) == (1, 2)


def test_borrow_with_no_copies_is_conflict_and_writes_nothing(db, patron, other_patron, make_book):
    book = make_book(total_copies=1)
    circulation.borrow_book(db, book.id, other_patron, now=T0)

    with pytest.raises(ConflictError):
        circulation.borrow_book(db, book.id, patron, now=T0)

    assert _borrowing_count(db, user_id=patron.id) == 0
    assert _copies(db, book) == (0, 1)


def test_borrow_same_book_twice_is_conflict(db, patron, make_book):
    book = make_book(total_copies=3)
    circulation.borrow_book(db, book.id, patron, now=T0)
    with pytest.raises(ConflictError):
        circulation.borrow_book(db, book.id, patron, now=T0)
    assert _copies(db, book) == (2, 3)


def test_borrow_unknown_book_is_not_found(db, patron):
    with pytest.raises(NotFoundError):
        circulation.borrow_book(db, 999, patron)


def test_patron_cannot_borrow_for_someone_else(db, patron, other_patron, make_book):
    book = make_book()
    with pytest.raises(ForbiddenError):
        circulation.borrow_book(db, book.id, patron, user_id=other_patron.id)


def test_librarian_borrows_on_behalf_of_patron(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, librarian, user_id=patron.id)
    assert borrowing.user_id == patron.id


def test_borrow_rolls_back_the_copy_when_the_insert_fails(db, patron, make_book, monkeypatch):
    book = make_book(total_copies=1)

    def boom(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(db, "flush", boom)
    with pytest.raises(RuntimeError):
        circulation.borrow_book(db, book.id, patron, now=T0)
    monkeypatch.undo()

    assert _copies(db, book) == (1, 1)
    assert _borrowing_count(db) == 0


# --- return ---

def test_on_time_return_puts_copy_back_without_fine(db, librarian, patron, make_book):
    book = make_book(total_copies=1)
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)

    returned, fine = circulation.return_book(db, borrowing.id, librarian, now=T0 + timedelta(days=3))

    assert fine is None
    assert returned.status == models.BorrowStatus.RETURNED
    assert returned.returned_at == T0 + timedelta(days=3)
    assert _copies(db, book) == (1, 1)


def test_late_return_by_five_days_fines_two_fifty(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    due = borrowing.due_date

    _, fine = circulation.return_book(db, borrowing.id, librarian, now=due + timedelta(days=5))

    assert fine is not None
    assert fine.amount == Decimal("2.50")
    assert fine.is_paid is False
    assert fine.user_id == patron.id
    assert fine.borrowing_id == borrowing.id


def test_second_return_is_conflict_and_counts_once(db, librarian, patron, make_book):
    book = make_book(total_copies=2)
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    circulation.return_book(db, borrowing.id, librarian, now=T0 + timedelta(days=1))

    with pytest.raises(ConflictError):
        circulation.return_book(db, borrowing.id, librarian, now=T0 + timedelta(days=2))

    assert _copies(db, book) == (2, 2)


def test_patron_cannot_return(db, patron, other_patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    with pytest.raises(ForbiddenError):
        circulation.return_book(db, borrowing.id, other_patron)
    with pytest.raises(ForbiddenError):
        circulation.return_book(db, borrowing.id, patron)


def test_return_unknown_borrowing_is_not_found(db, librarian):
    with pytest.raises(NotFoundError):
        circulation.return_book(db, 12345, librarian)


def test_return_never_exceeds_total_after_shrinking_copies(db, librarian, patron, make_book):
    book = make_book(total_copies=2)
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    # an edit dropped the shelf count while the copy was out
    book = db.get(models.Book, book.id)
    book.total_copies = 1
    book.available_copies = 1
    db.commit()

    circulation.return_book(db, borrowing.id, librarian, now=T0 + timedelta(days=1))

    assert _copies(db, book) == (1, 1)


# --- renew ---

def test_renew_twice_then_limit_is_conflict(db, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    first_due = borrowing.due_date

    renewed = circulation.renew_borrowing(db, borrowing.id, patron, now=T0 + timedelta(days=1))
    assert renewed.renewal_count == 1
    assert renewed.due_date == first_due + timedelta(days=14)
    assert circulation.renewals_remaining(renewed) == 1

    renewed = circulation.renew_borrowing(db, borrowing.id, patron, now=T0 + timedelta(days=2))
    assert renewed.renewal_count == 2
    assert circulation.renewals_remaining(renewed) == 0

    with pytest.raises(ConflictError):
        circulation.renew_borrowing(db, borrowing.id, patron, now=T0 + timedelta(days=3))
    db.expire_all()
    assert db.get(models.Borrowing, borrowing.id).renewal_count == 2


def test_patron_cannot_renew_another_patrons_borrowing(db, patron, other_patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    with pytest.raises(ForbiddenError):
        circulation.renew_borrowing(db, borrowing.id, other_patron, now=T0)


def test_staff_can_renew_any_borrowing(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    renewed = circulation.renew_borrowing(db, borrowing.id, librarian, now=T0)
    assert renewed.renewal_count == 1


def test_overdue_borrowing_cannot_be_renewed(db, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    with pytest.raises(ConflictError):
        circulation.renew_borrowing(db, borrowing.id, patron, now=borrowing.due_date + timedelta(hours=1))


def test_returned_borrowing_cannot_be_renewed(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    circulation.return_book(db, borrowing.id, librarian, now=T0 + timedelta(days=1))
    with pytest.raises(ConflictError):
        circulation.renew_borrowing(db, borrowing.id, patron, now=T0 + timedelta(days=2))


def test_unpaid_fine_blocks_renewal(db, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    db.add(models.Fine(borrowing_id=borrowing.id, user_id=patron.id, amount=Decimal("1.00"), is_paid=False))
    db.commit()
    with pytest.raises(ConflictError):
        circulation.renew_borrowing(db, borrowing.id, patron, now=T0 + timedelta(days=1))


# --- reservations ---

def test_reservation_lifecycle_approve(db, librarian, patron, make_book):
    book = make_book(total_copies=2)
    reservation = circulation.create_reservation(db, book.id, patron, notes="for class", now=T0)
    assert reservation.status == models.ReservationStatus.PENDING
    assert reservation.expires_at == T0 + timedelta(days=7)

    approved, borrowing = circulation.approve_reservation(db, reservation.id, librarian, now=T0 + timedelta(hours=2))

    assert approved.status == models.ReservationStatus.FULFILLED
    assert approved.approved_by == librarian.id
    assert approved.approved_at == T0 + timedelta(hours=2)
    assert borrowing.user_id == patron.id
    assert borrowing.book_id == book.id
    assert borrowing.due_date == T0 + timedelta(hours=2, days=14)
    assert _copies(db, book) == (1, 2)


def test_approve_without_copies_is_conflict_and_stays_pending(db, librarian, patron, other_patron, make_book):
    book = make_book(total_copies=1)
    reservation = circulation.create_reservation(db, book.id, patron, now=T0)
    circulation.borrow_book(db, book.id, other_patron, now=T0)

    with pytest.raises(ConflictError):
        circulation.approve_reservation(db, reservation.id, librarian, now=T0)

    db.expire_all()
    assert db.get(models.Reservation, reservation.id).status == models.ReservationStatus.PENDING
    assert _borrowing_count(db, user_id=patron.id) == 0
    assert _copies(db, book) == (0, 1)


def test_approval_is_all_or_nothing(db, librarian, patron, make_book, monkeypatch):
    book = make_book(total_copies=1)
    reservation = circulation.create_reservation(db, book.id, patron, now=T0)

    def lost_race(db, book_id):
        raise ConflictError("No copies of this book are currently available")

    monkeypatch.setattr(circulation, "_take_copy", lost_race)
    with pytest.raises(ConflictError):
        circulation.approve_reservation(db, reservation.id, librarian, now=T0)

    db.expire_all()
    resv = db.get(models.Reservation, reservation.id)
    assert resv.status == models.ReservationStatus.PENDING
    assert resv.approved_by is None
    assert _borrowing_count(db) == 0


def test_reject_leaves_book_untouched(db, librarian, patron, make_book):
    book = make_book(total_copies=1)
    reservation = circulation.create_reservation(db, book.id, patron, now=T0)

    rejected = circulation.reject_reservation(db, reservation.id, librarian, notes="reference copy only", now=T0)

    assert rejected.status == models.ReservationStatus.REJECTED
    assert rejected.notes == "reference copy only"
    assert rejected.approved_by == librarian.id
    assert _copies(db, book) == (1, 1)
    assert _borrowing_count(db) == 0


@pytest.mark.parametrize("first", ["approve", "reject"])
def test_processed_reservation_cannot_change_again(db, librarian, patron, make_book, first):
    book = make_book(total_copies=3)
    reservation = circulation.create_reservation(db, book.id, patron, now=T0)
    if first == "approve":
        circulation.approve_reservation(db, reservation.id, librarian, now=T0)
    else:
        circulation.reject_reservation(db, reservation.id, librarian, now=T0)

    with pytest.raises(ConflictError):
        circulation.approve_reservation(db, reservation.id, librarian, now=T0)
    with pytest.raises(ConflictError):
        circulation.reject_reservation(db, reservation.id, librarian, now=T0)


def test_patron_cannot_process_reservations(db, patron, make_book):
    book = make_book()
    reservation = circulation.create_reservation(db, book.id, patron, now=T0)
    with pytest.raises(ForbiddenError):
        circulation.approve_reservation(db, reservation.id, patron)
    with pytest.raises(ForbiddenError):
        circulation.reject_reservation(db, reservation.id, patron)


def test_duplicate_pending_request_is_conflict(db, patron, make_book):
    book = make_book()
    circulation.create_reservation(db, book.id, patron, now=T0)
    with pytest.raises(ConflictError):
        circulation.create_reservation(db, book.id, patron, now=T0)


def test_request_for_book_already_borrowed_is_conflict(db, patron, make_book):
    book = make_book(total_copies=2)
    circulation.borrow_book(db, book.id, patron, now=T0)
    with pytest.raises(ConflictError):
        circulation.create_reservation(db, book.id, patron, now=T0)


def test_request_for_unknown_book_is_not_found(db, patron):
    with pytest.raises(NotFoundError):
        circulation.create_reservation(db, 404, patron)


# --- fines ---

def test_pay_fine_once(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    _, fine = circulation.return_book(db, borrowing.id, librarian, now=borrowing.due_date + timedelta(days=2))

    paid = circulation.pay_fine(db, fine.id, librarian, now=T0 + timedelta(days=20))
    assert paid.is_paid is True
    assert paid.paid_at == T0 + timedelta(days=20)

    with pytest.raises(ConflictError):
        circulation.pay_fine(db, fine.id, librarian)


def test_patron_cannot_mark_fine_paid(db, librarian, patron, make_book):
    book = make_book()
    borrowing = circulation.borrow_book(db, book.id, patron, now=T0)
    _, fine = circulation.return_book(db, borrowing.id, librarian, now=borrowing.due_date + timedelta(days=1))
    with pytest.raises(ForbiddenError):
        circulation.pay_fine(db, fine.id, patron)


# --- copy-count invariant over a mixed sequence ---

def test_copy_count_stays_in_bounds(db, librarian, patron, other_patron, make_book):
    book = make_book(total_copies=2)

    def check():
        available, total = _copies(db, book)
        assert 0 <= available <= total

    b1 = circulation.borrow_book(db, book.id, patron, now=T0)
    check()
    r = circulation.create_reservation(db, book.id, other_patron, now=T0)
    circulation.approve_reservation(db, r.id, librarian, now=T0)
    check()
    assert _copies(db, book) == (0, 2)

    with pytest.raises(ConflictError):
        circulation.borrow_book(db, book.id, librarian, now=T0)
    check()

    circulation.return_book(db, b1.id, librarian, now=T0 + timedelta(days=1))
    check()
    b2 = db.query(models.Borrowing).filter_by(user_id=other_patron.id).one()
    circulation.return_book(db, b2.id, librarian, now=T0 + timedelta(days=1))
    check()
    with pytest.raises(ConflictError):
        circulation.return_book(db, b2.id, librarian, now=T0 + timedelta(days=1))
    assert _copies(db, book) == (2, 2)


def test_role_order():
    assert models.UserRole.ADMIN.at_least(models.UserRole.LIBRARIAN)
    assert models.UserRole.LIBRARIAN.at_least(models.UserRole.LIBRARIAN)
    assert models.UserRole.LIBRARIAN.at_least("PATRON")
    assert not models.UserRole.PATRON.at_least(models.UserRole.LIBRARIAN)
    assert not models.UserRole.LIBRARIAN.at_least(models.UserRole.ADMIN)
