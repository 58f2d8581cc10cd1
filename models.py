import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, Text, Enum, ForeignKey
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    PATRON = "PATRON"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, required: "UserRole") -> bool:
        """True when this role grants everything `required` grants."""
        return self.rank >= UserRole(required).rank


_ROLE_RANK = {UserRole.PATRON: 1, UserRole.LIBRARIAN: 2, UserRole.ADMIN: 3}


class BorrowStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    REJECTED = "REJECTED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(Enum(UserRole, native_enum=False, length=20), nullable=False, default=UserRole.PATRON)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # circulation history goes with the user
    borrowings = relationship("Borrowing", back_populates="user", cascade="all")
    reservations = relationship("Reservation", back_populates="user", foreign_keys="Reservation.user_id", cascade="all")
    fines = relationship("Fine", back_populates="user", cascade="all")

    @property
    def is_staff(self) -> bool:
        return self.role.at_least(UserRole.LIBRARIAN)


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, index=True, nullable=False)
    category = Column(String, nullable=False, index=True)
    publisher = Column(String, nullable=True)
    published_year = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)  # shelf, e.g. "A-101"
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    borrowings = relationship("Borrowing", back_populates="book", cascade="all")
    reservations = relationship("Reservation", back_populates="book", cascade="all")


class Borrowing(Base):
    __tablename__ = "borrowings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), index=True, nullable=False)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    status = Column(Enum(BorrowStatus, native_enum=False, length=20), nullable=False, default=BorrowStatus.ACTIVE, index=True)
    renewal_count = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="borrowings")
    book = relationship("Book", back_populates="borrowings")
    fines = relationship("Fine", back_populates="borrowing", cascade="all")


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), index=True, nullable=False)
    status = Column(Enum(ReservationStatus, native_enum=False, length=20), nullable=False, default=ReservationStatus.PENDING, index=True)
    reserved_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="reservations", foreign_keys=[user_id])
    book = relationship("Book", back_populates="reservations")


class Fine(Base):
    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, index=True)
    borrowing_id = Column(Integer, ForeignKey("borrowings.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)

    borrowing = relationship("Borrowing", back_populates="fines")
    user = relationship("User", back_populates="fines")
